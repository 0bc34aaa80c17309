from __future__ import annotations

import base64
import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from windows_node_e2e.cloud import AwsProvider, Credentials, cloud_provider_factory
from windows_node_e2e.cloud.aws import RESOURCE_RECORD_FILENAME, WINDOWS_USER_DATA, make_ec2_client
from windows_node_e2e.errors import ProvisioningError


@pytest.fixture
def key_pair(tmp_path: Path):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = tmp_path / "libra.pem"
    pem.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.TraditionalOpenSSL,
            serialization.NoEncryption(),
        )
    )
    return key, pem


def _encrypt(key, text: str) -> str:
    return base64.b64encode(key.public_key().encrypt(text.encode(), padding.PKCS1v15())).decode()


def _ec2(password_data: list) -> MagicMock:
    ec2 = MagicMock()
    ec2.describe_vpcs.side_effect = [{"Vpcs": []}, {"Vpcs": [{"VpcId": "vpc-default"}]}]
    ec2.describe_subnets.return_value = {
        "Subnets": [
            {"SubnetId": "subnet-private", "MapPublicIpOnLaunch": False},
            {"SubnetId": "subnet-public", "MapPublicIpOnLaunch": True},
        ]
    }
    ec2.create_security_group.return_value = {"GroupId": "sg-1"}
    ec2.run_instances.return_value = {"Instances": [{"InstanceId": "i-1"}]}
    ec2.describe_instances.return_value = {"Reservations": [{"Instances": [{"PublicIpAddress": "3.3.3.3"}]}]}
    ec2.get_password_data.side_effect = [{"PasswordData": p} for p in password_data]
    return ec2


def _provider(ec2, tmp_path: Path, pem: Path) -> AwsProvider:
    return AwsProvider(
        ec2,
        cluster_name="ci-abc12",
        artifact_dir=tmp_path / "artifacts",
        image_id="ami-0b8d82dea356226d3",
        instance_type="m4.large",
        key_name="libra",
        private_key_path=pem,
        password_poll_s=1,
        sleep=lambda s: None,
    )


def _record(tmp_path: Path) -> dict:
    return json.loads((tmp_path / "artifacts" / RESOURCE_RECORD_FILENAME).read_text(encoding="utf-8"))


def test_create_windows_vm(tmp_path: Path, key_pair) -> None:
    key, pem = key_pair
    ec2 = _ec2(["", "  ", _encrypt(key, "Adm1n!pass")])
    provider = _provider(ec2, tmp_path, pem)

    creds = provider.create_windows_vm()

    assert creds == Credentials(address="3.3.3.3", password="Adm1n!pass", instance_id="i-1")
    assert "Adm1n" not in repr(creds)

    run_kwargs = ec2.run_instances.call_args.kwargs
    assert run_kwargs["ImageId"] == "ami-0b8d82dea356226d3"
    assert run_kwargs["InstanceType"] == "m4.large"
    assert run_kwargs["KeyName"] == "libra"
    assert run_kwargs["MinCount"] == run_kwargs["MaxCount"] == 1
    assert run_kwargs["UserData"] == WINDOWS_USER_DATA
    assert run_kwargs["NetworkInterfaces"][0]["SubnetId"] == "subnet-public"
    assert run_kwargs["NetworkInterfaces"][0]["Groups"] == ["sg-1"]

    ports = sorted(p["FromPort"] for p in ec2.authorize_security_group_ingress.call_args.kwargs["IpPermissions"])
    assert ports == [22, 5986]
    ec2.get_waiter.assert_called_once_with("instance_running")
    assert ec2.get_password_data.call_count == 3
    assert _record(tmp_path) == {"instance_ids": ["i-1"], "security_group_ids": ["sg-1"]}


def test_create_failure_is_provisioning_error_and_keeps_record(tmp_path: Path, key_pair) -> None:
    _, pem = key_pair
    ec2 = _ec2([])
    ec2.run_instances.side_effect = ClientError(
        {"Error": {"Code": "InstanceLimitExceeded", "Message": "too many"}}, "RunInstances"
    )
    provider = _provider(ec2, tmp_path, pem)

    with pytest.raises(ProvisioningError, match="InstanceLimitExceeded"):
        provider.create_windows_vm()

    # The security group was created before the failure and must be cleaned up.
    assert _record(tmp_path) == {"instance_ids": [], "security_group_ids": ["sg-1"]}
    provider.destroy_windows_vms()
    ec2.terminate_instances.assert_not_called()
    ec2.delete_security_group.assert_called_once_with(GroupId="sg-1")


def test_destroy_windows_vms_terminates_recorded_resources(tmp_path: Path, key_pair) -> None:
    key, pem = key_pair
    ec2 = _ec2([_encrypt(key, "pw")])
    provider = _provider(ec2, tmp_path, pem)
    provider.create_windows_vm()

    provider.destroy_windows_vms()

    ec2.terminate_instances.assert_called_once_with(InstanceIds=["i-1"])
    ec2.get_waiter.assert_any_call("instance_terminated")
    ec2.delete_security_group.assert_called_once_with(GroupId="sg-1")
    assert not (tmp_path / "artifacts" / RESOURCE_RECORD_FILENAME).exists()

    # A second teardown finds nothing left to do.
    provider.destroy_windows_vms()
    ec2.terminate_instances.assert_called_once()


def test_destroy_failure_is_provisioning_error(tmp_path: Path, key_pair) -> None:
    _, pem = key_pair
    ec2 = MagicMock()
    provider = _provider(ec2, tmp_path, pem)
    provider.record.add(instance_id="i-9")
    ec2.terminate_instances.side_effect = ClientError(
        {"Error": {"Code": "UnauthorizedOperation", "Message": "no"}}, "TerminateInstances"
    )

    with pytest.raises(ProvisioningError, match="destroying"):
        provider.destroy_windows_vms()
    assert provider.record.load()["instance_ids"] == ["i-9"]


def test_uses_cluster_vpc_when_tagged(tmp_path: Path, key_pair) -> None:
    key, pem = key_pair
    ec2 = _ec2([_encrypt(key, "pw")])
    ec2.describe_vpcs.side_effect = [{"Vpcs": [{"VpcId": "vpc-cluster"}]}]
    _provider(ec2, tmp_path, pem).create_windows_vm()

    assert ec2.describe_vpcs.call_count == 1
    assert ec2.create_security_group.call_args.kwargs["VpcId"] == "vpc-cluster"


def test_factory_reads_cluster_name_from_kubeconfig(tmp_path: Path) -> None:
    kubeconfig = tmp_path / "kubeconfig"
    kubeconfig.write_text(
        "current-context: admin\n"
        "contexts:\n"
        "- name: admin\n"
        "  context: {cluster: CI_Cluster.example, user: admin}\n"
        "clusters:\n"
        "- name: CI_Cluster.example\n"
        "  cluster: {server: 'https://api.example:6443'}\n",
        encoding="utf-8",
    )
    ec2 = MagicMock()

    provider = cloud_provider_factory(
        kubeconfig,
        tmp_path / "creds",
        "default",
        tmp_path / "artifacts",
        "ami-1",
        "m4.large",
        "libra",
        tmp_path / "libra.pem",
        region="us-east-1",
        ec2=ec2,
    )

    assert isinstance(provider, AwsProvider)
    assert provider.ec2 is ec2
    assert provider.cluster_name == "ci-cluster-example"


def test_make_ec2_client_uses_explicit_credentials_file(tmp_path: Path, monkeypatch) -> None:
    for var in ("AWS_PROFILE", "AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "AWS_SESSION_TOKEN"):
        monkeypatch.delenv(var, raising=False)
    creds = tmp_path / "credentials"
    creds.write_text("[default]\naws_access_key_id = AKIDEXAMPLE\naws_secret_access_key = secret\n", encoding="utf-8")

    client = make_ec2_client(creds, "default", "us-east-1")

    assert client.meta.region_name == "us-east-1"
    assert client.meta.service_model.service_name == "ec2"


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": f"{code} raised"}}, operation)


def test_destroy_drops_resources_ec2_no_longer_knows(tmp_path: Path, key_pair) -> None:
    _, pem = key_pair
    ec2 = MagicMock()
    provider = _provider(ec2, tmp_path, pem)
    provider.record.add(instance_id="i-old", security_group_id="sg-old")
    provider.record.add(instance_id="i-new", security_group_id="sg-new")

    def terminate(InstanceIds):
        if InstanceIds == ["i-old"]:
            raise _client_error("InvalidInstanceID.NotFound", "TerminateInstances")
        return {}

    def delete(GroupId):
        if GroupId == "sg-old":
            raise _client_error("InvalidGroup.NotFound", "DeleteSecurityGroup")
        return {}

    ec2.terminate_instances.side_effect = terminate
    ec2.delete_security_group.side_effect = delete

    provider.destroy_windows_vms()

    ec2.terminate_instances.assert_any_call(InstanceIds=["i-new"])
    ec2.get_waiter.return_value.wait.assert_called_once_with(InstanceIds=["i-new"])
    assert [c.kwargs["GroupId"] for c in ec2.delete_security_group.call_args_list] == ["sg-old", "sg-new"]
    assert not (tmp_path / "artifacts" / RESOURCE_RECORD_FILENAME).exists()


def test_destroy_keeps_only_what_could_not_be_destroyed(tmp_path: Path, key_pair) -> None:
    _, pem = key_pair
    ec2 = MagicMock()
    provider = _provider(ec2, tmp_path, pem)
    provider.record.add(instance_id="i-a", security_group_id="sg-1")
    provider.record.add(instance_id="i-b", security_group_id="sg-2")

    def terminate(InstanceIds):
        if InstanceIds == ["i-a"]:
            raise _client_error("UnauthorizedOperation", "TerminateInstances")
        return {}

    def delete(GroupId):
        if GroupId == "sg-1":
            raise _client_error("DependencyViolation", "DeleteSecurityGroup")
        return {}

    ec2.terminate_instances.side_effect = terminate
    ec2.delete_security_group.side_effect = delete

    with pytest.raises(ProvisioningError) as exc:
        provider.destroy_windows_vms()

    assert "i-a" in str(exc.value) and "sg-1" in str(exc.value)
    ec2.terminate_instances.assert_any_call(InstanceIds=["i-b"])
    assert _record(tmp_path) == {"instance_ids": ["i-a"], "security_group_ids": ["sg-1"]}
