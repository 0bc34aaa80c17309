"""AWS EC2 implementation of the cloud provider contract.

Each created resource is written to a small JSON record in the artifact
directory before anything else happens to it. Teardown reads that record, so
a VM created by a run that later crashed can still be destroyed by pointing a
new process at the same ``ARTIFACT_DIR``.
"""

from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import boto3
import botocore.session
from botocore.exceptions import BotoCoreError, ClientError, WaiterError

from ..config import SSH_PORT, WINRM_PORT
from ..errors import ProvisioningError
from ..waiting import wait_for
from .base import Credentials
from .password import decrypt_windows_password

logger = logging.getLogger(__name__)

RESOURCE_RECORD_FILENAME = "windows-node-installer.json"

# EC2 only makes the password available a few minutes after launch.
DEFAULT_PASSWORD_TIMEOUT_S = 1200.0
DEFAULT_PASSWORD_POLL_S = 15.0

# Runs on first boot: WinRM over HTTPS with a self-signed certificate (basic
# auth) and the OpenSSH server capability. The sshd/ssh-agent services are
# configured later over WinRM.
WINDOWS_USER_DATA = """<powershell>
$cert = New-SelfSignedCertificate -DnsName $env:COMPUTERNAME -CertStoreLocation Cert:\\LocalMachine\\My
New-Item -Path WSMan:\\LocalHost\\Listener -Transport HTTPS -Address * -CertificateThumbprint $cert.Thumbprint -Force
Set-Item -Path WSMan:\\LocalHost\\Service\\Auth\\Basic -Value $true
New-NetFirewallRule -DisplayName 'WinRM HTTPS' -Direction Inbound -Protocol TCP -LocalPort 5986 -Action Allow
Add-WindowsCapability -Online -Name OpenSSH.Server~~~~0.0.1.0
New-NetFirewallRule -DisplayName 'OpenSSH Server' -Direction Inbound -Protocol TCP -LocalPort 22 -Action Allow
</powershell>
"""


def make_ec2_client(credentials_file: Path, profile: str, region: str) -> Any:
    """Create an EC2 client bound to an explicit shared credentials file."""

    try:
        core = botocore.session.Session(profile=profile)
        core.set_config_variable("credentials_file", str(credentials_file))
        session = boto3.session.Session(botocore_session=core, region_name=region)
        return session.client("ec2")
    except BotoCoreError as e:
        raise ProvisioningError(f"error instantiating AWS session ({profile}@{credentials_file}): {e}") from e


class ResourceRecord:
    """JSON record of the instances and security groups created in a run."""

    def __init__(self, artifact_dir: Path, filename: str = RESOURCE_RECORD_FILENAME):
        self.path = Path(artifact_dir) / filename

    def load(self) -> Dict[str, List[str]]:
        if not self.path.exists():
            return {"instance_ids": [], "security_group_ids": []}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ProvisioningError(f"cannot read resource record {self.path}: {e}") from e
        return {
            "instance_ids": [str(x) for x in data.get("instance_ids") or []],
            "security_group_ids": [str(x) for x in data.get("security_group_ids") or []],
        }

    def add(self, *, instance_id: Optional[str] = None, security_group_id: Optional[str] = None) -> None:
        data = self.load()
        if instance_id and instance_id not in data["instance_ids"]:
            data["instance_ids"].append(instance_id)
        if security_group_id and security_group_id not in data["security_group_ids"]:
            data["security_group_ids"].append(security_group_id)
        self._write(data)

    def _write(self, data: Dict[str, List[str]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp, self.path)

    def discard(self, *, instance_ids: Iterable[str] = (), security_group_ids: Iterable[str] = ()) -> None:
        """Forget destroyed resources; the file goes away once nothing is left."""

        drop_instances = set(instance_ids)
        drop_groups = set(security_group_ids)
        if not drop_instances and not drop_groups:
            return
        data = self.load()
        data["instance_ids"] = [i for i in data["instance_ids"] if i not in drop_instances]
        data["security_group_ids"] = [g for g in data["security_group_ids"] if g not in drop_groups]
        if data["instance_ids"] or data["security_group_ids"]:
            self._write(data)
        else:
            self.remove()

    def remove(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


def _error_code(e: ClientError) -> str:
    return str(e.response.get("Error", {}).get("Code", ""))


class AwsProvider:
    """Create and destroy Windows VMs on EC2."""

    def __init__(
        self,
        ec2: Any,
        *,
        cluster_name: str,
        artifact_dir: Path,
        image_id: str,
        instance_type: str,
        key_name: str,
        private_key_path: Path,
        ingress_cidr: str = "0.0.0.0/0",
        password_timeout_s: float = DEFAULT_PASSWORD_TIMEOUT_S,
        password_poll_s: float = DEFAULT_PASSWORD_POLL_S,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.ec2 = ec2
        self.cluster_name = cluster_name
        self.image_id = image_id
        self.instance_type = instance_type
        self.key_name = key_name
        self.private_key_path = Path(private_key_path)
        self.ingress_cidr = ingress_cidr
        self.password_timeout_s = password_timeout_s
        self.password_poll_s = password_poll_s
        self.record = ResourceRecord(artifact_dir)
        self._sleep = sleep

    # -------------------------
    # helpers
    # -------------------------
    def _name(self, suffix: str) -> str:
        return f"{self.cluster_name}-windows-{suffix}"

    def _tags(self, name: str) -> List[Dict[str, str]]:
        return [
            {"Key": "Name", "Value": name},
            {"Key": f"kubernetes.io/cluster/{self.cluster_name}", "Value": "owned"},
        ]

    def _find_network(self) -> Tuple[str, Optional[str]]:
        """Return (vpc_id, subnet_id) for the cluster VPC or the default VPC."""

        vpcs = self.ec2.describe_vpcs(
            Filters=[{"Name": f"tag:kubernetes.io/cluster/{self.cluster_name}", "Values": ["owned", "shared"]}]
        ).get("Vpcs", [])
        if not vpcs:
            logger.info("No VPC tagged for cluster %s, using the default VPC", self.cluster_name)
            vpcs = self.ec2.describe_vpcs(Filters=[{"Name": "isDefault", "Values": ["true"]}]).get("Vpcs", [])
        if not vpcs:
            raise ProvisioningError(f"no VPC found for cluster {self.cluster_name} and no default VPC")
        vpc_id = vpcs[0]["VpcId"]

        subnets = self.ec2.describe_subnets(Filters=[{"Name": "vpc-id", "Values": [vpc_id]}]).get("Subnets", [])
        public = [s for s in subnets if s.get("MapPublicIpOnLaunch")]
        chosen = (public or subnets or [None])[0]
        return vpc_id, (chosen or {}).get("SubnetId")

    def _create_security_group(self, vpc_id: str) -> str:
        name = self._name("sg-" + time.strftime("%Y%m%d%H%M%S"))
        resp = self.ec2.create_security_group(
            GroupName=name,
            Description=f"WinRM-HTTPS and SSH access to Windows e2e nodes of {self.cluster_name}",
            VpcId=vpc_id,
            TagSpecifications=[{"ResourceType": "security-group", "Tags": self._tags(name)}],
        )
        sg_id = resp["GroupId"]
        self.record.add(security_group_id=sg_id)
        self.ec2.authorize_security_group_ingress(
            GroupId=sg_id,
            IpPermissions=[
                {
                    "IpProtocol": "tcp",
                    "FromPort": port,
                    "ToPort": port,
                    "IpRanges": [{"CidrIp": self.ingress_cidr, "Description": desc}],
                }
                for port, desc in ((WINRM_PORT, "WinRM HTTPS"), (SSH_PORT, "SSH"))
            ],
        )
        logger.info("Created security group %s (%s)", sg_id, name)
        return sg_id

    def _launch_instance(self, sg_id: str, subnet_id: Optional[str]) -> str:
        name = self._name("node")
        kwargs: Dict[str, Any] = {
            "ImageId": self.image_id,
            "InstanceType": self.instance_type,
            "KeyName": self.key_name,
            "MinCount": 1,
            "MaxCount": 1,
            "UserData": WINDOWS_USER_DATA,
            "TagSpecifications": [{"ResourceType": "instance", "Tags": self._tags(name)}],
        }
        if subnet_id:
            kwargs["NetworkInterfaces"] = [
                {
                    "DeviceIndex": 0,
                    "SubnetId": subnet_id,
                    "Groups": [sg_id],
                    "AssociatePublicIpAddress": True,
                }
            ]
        else:
            kwargs["SecurityGroupIds"] = [sg_id]

        resp = self.ec2.run_instances(**kwargs)
        instances = resp.get("Instances") or []
        if len(instances) != 1:
            raise ProvisioningError(f"expected exactly one instance, EC2 returned {len(instances)}")
        instance_id = instances[0]["InstanceId"]
        self.record.add(instance_id=instance_id)
        logger.info("Launched instance %s (%s, %s, %s)", instance_id, self.image_id, self.instance_type, name)
        return instance_id

    def _public_address(self, instance_id: str) -> str:
        reservations = self.ec2.describe_instances(InstanceIds=[instance_id]).get("Reservations", [])
        for reservation in reservations:
            for inst in reservation.get("Instances", []):
                address = inst.get("PublicIpAddress") or inst.get("PrivateIpAddress")
                if address:
                    return address
        raise ProvisioningError(f"instance {instance_id} has no IP address")

    def _wait_for_password(self, instance_id: str) -> str:
        def probe() -> Optional[str]:
            data = self.ec2.get_password_data(InstanceId=instance_id).get("PasswordData") or ""
            return data.strip() or None

        encrypted = wait_for(
            probe,
            description=f"Administrator password of {instance_id}",
            timeout_s=self.password_timeout_s,
            interval_s=self.password_poll_s,
            error_cls=ProvisioningError,
            sleep=self._sleep,
        )
        return decrypt_windows_password(encrypted, self.private_key_path)

    # -------------------------
    # public API
    # -------------------------
    def create_windows_vm(self) -> Credentials:
        try:
            vpc_id, subnet_id = self._find_network()
            sg_id = self._create_security_group(vpc_id)
            instance_id = self._launch_instance(sg_id, subnet_id)
            logger.info("Waiting for instance %s to be running", instance_id)
            self.ec2.get_waiter("instance_running").wait(InstanceIds=[instance_id])
            address = self._public_address(instance_id)
            password = self._wait_for_password(instance_id)
        except (ClientError, BotoCoreError, WaiterError) as e:
            raise ProvisioningError(f"error creating Windows VM: {e}") from e

        logger.info("Windows VM %s is up at %s", instance_id, address)
        return Credentials(address=address, password=password, instance_id=instance_id)

    def destroy_windows_vms(self) -> None:
        """Terminate recorded instances and delete recorded security groups.

        Resources EC2 no longer knows count as destroyed. Every resource is
        attempted; the ones that could not be destroyed stay in the record and
        a :class:`ProvisioningError` listing them is raised at the end.
        """

        data = self.record.load()
        instance_ids = data["instance_ids"]
        sg_ids = data["security_group_ids"]
        if not instance_ids and not sg_ids:
            logger.info("No recorded Windows VMs to destroy (%s)", self.record.path)
            return

        failures: List[str] = []
        gone_instances: List[str] = []
        gone_groups: List[str] = []

        terminating: List[str] = []
        for instance_id in instance_ids:
            logger.info("Terminating instance %s", instance_id)
            try:
                self.ec2.terminate_instances(InstanceIds=[instance_id])
            except ClientError as e:
                if _error_code(e) == "InvalidInstanceID.NotFound":
                    logger.warning("Instance %s no longer exists, dropping it from the record", instance_id)
                    gone_instances.append(instance_id)
                else:
                    failures.append(f"{instance_id}: {e}")
                continue
            except BotoCoreError as e:
                failures.append(f"{instance_id}: {e}")
                continue
            terminating.append(instance_id)

        if terminating:
            try:
                self.ec2.get_waiter("instance_terminated").wait(InstanceIds=terminating)
                gone_instances.extend(terminating)
            except (ClientError, BotoCoreError, WaiterError) as e:
                failures.append(f"{', '.join(terminating)}: {e}")

        for sg_id in sg_ids:
            logger.info("Deleting security group %s", sg_id)
            try:
                self.ec2.delete_security_group(GroupId=sg_id)
            except ClientError as e:
                if _error_code(e) == "InvalidGroup.NotFound":
                    logger.warning("Security group %s no longer exists, dropping it from the record", sg_id)
                else:
                    failures.append(f"{sg_id}: {e}")
                    continue
            except BotoCoreError as e:
                failures.append(f"{sg_id}: {e}")
                continue
            gone_groups.append(sg_id)

        self.record.discard(instance_ids=gone_instances, security_group_ids=gone_groups)
        if failures:
            raise ProvisioningError("error destroying Windows VMs: " + "; ".join(failures))
