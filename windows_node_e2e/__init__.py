"""End-to-end harness for running Windows node binaries on a throwaway cloud VM."""

__version__ = "0.1.0"
