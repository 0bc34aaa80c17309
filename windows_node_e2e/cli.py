"""Command line interface for the Windows node e2e harness."""

from __future__ import annotations

import argparse
import json
import logging
from typing import List, Optional

from . import __version__
from .config import HarnessConfig
from .e2e import EXIT_OK, EXIT_SETUP_FAILED, EXIT_TEARDOWN_FAILED, run_e2e
from .e2e.framework import default_provider_factory
from .errors import ConfigError, HarnessError
from .log_utils import configure_logging
from .settings import SettingsStore

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="windows-node-e2e",
        description=(
            "Create a Windows VM, copy a test binary to it, run it over WinRM and destroy the VM. "
            "Requires KUBECONFIG, AWS_SHARED_CREDENTIALS_FILE, ARTIFACT_DIR and KUBE_SSH_KEY_PATH."
        ),
    )
    ap.add_argument(
        "--binary-to-be-transferred",
        "--binaryToBeTransferred",
        dest="binary",
        default="",
        help="Absolute path of the binary to be transferred",
    )
    ap.add_argument("--region", default=None, help="AWS region (default: us-east-1)")
    ap.add_argument("--image-id", default=None, help="Windows AMI id")
    ap.add_argument("--instance-type", default=None)
    ap.add_argument("--key-name", default=None, help="EC2 key pair matching KUBE_SSH_KEY_PATH")
    ap.add_argument(
        "--service-wait-timeout",
        type=float,
        default=None,
        help="Seconds to wait for the sshd/ssh-agent services (default: 300)",
    )
    ap.add_argument("--run-id", default=None, help="Name of the run folder under $ARTIFACT_DIR/e2e_runs")
    ap.add_argument(
        "--destroy-only",
        action="store_true",
        help="Only destroy VMs recorded in $ARTIFACT_DIR by an earlier run",
    )
    ap.add_argument("--dry-run", action="store_true", help="Print the resolved configuration and exit")
    ap.add_argument(
        "--save-defaults",
        action="store_true",
        help="Persist --region/--image-id/--instance-type/--key-name as defaults",
    )
    ap.add_argument("--log-file", default=None, help="Also write logs to this file")
    ap.add_argument("-v", "--verbose", action="store_true")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return ap


def main(argv: Optional[List[str]] = None, *, settings: Optional[SettingsStore] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_file, level=logging.DEBUG if args.verbose else logging.INFO)

    store = settings if settings is not None else SettingsStore()
    overrides = {
        "region": args.region,
        "image_id": args.image_id,
        "instance_type": args.instance_type,
        "key_name": args.key_name,
        "service_wait_timeout_s": args.service_wait_timeout,
        "binary_to_be_transferred": args.binary or None,
    }

    if args.save_defaults:
        patch = {k: v for k, v in overrides.items() if k in ("region", "image_id", "instance_type", "key_name")}
        patch = {k: v for k, v in patch.items() if v}
        vm_defaults = dict(store.get("vm_defaults") or {})
        vm_defaults.update(patch)
        store.update({"vm_defaults": vm_defaults})
        logger.info("Saved defaults to %s: %s", store.path(), patch)

    try:
        config = HarnessConfig.from_env(settings=store.vm_defaults(), overrides=overrides)
    except ConfigError as e:
        logger.error("%s", e)
        return EXIT_SETUP_FAILED

    if args.dry_run:
        print(json.dumps(config.to_dict(), indent=2, sort_keys=True))
        return EXIT_OK

    if args.destroy_only:
        try:
            default_provider_factory(config).destroy_windows_vms()
        except HarnessError as e:
            logger.error("Failed tearing down the Windows VMs: %s", e)
            return EXIT_TEARDOWN_FAILED
        return EXIT_OK

    if config.binary_to_be_transferred is None:
        logger.error("--binary-to-be-transferred is required to run the tests")
        return EXIT_SETUP_FAILED

    result = run_e2e(config, run_id=args.run_id)
    return result.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
