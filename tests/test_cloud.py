import dataclasses
from datetime import datetime, timezone

import pytest
from botocore.stub import Stubber

from poolsync.cloud import Boto3CloudProvider
from poolsync.errors import CloudInventoryError


@pytest.mark.asyncio
async def test_lists_present_instances_only(cloud_reader, fake_cloud, web_spec):
    fake_cloud.launch("web-asg", "i-1", private="10.0.0.1")
    fake_cloud.launch("web-asg", "i-2", private="10.0.0.2", state="Terminating:Wait")
    fake_cloud.launch("web-asg", "i-3", state="Pending")

    members = await cloud_reader.list_group_members([web_spec])
    assert members == {"web": ["i-1", "i-3"]}


@pytest.mark.asyncio
async def test_spec_without_group_is_skipped(cloud_reader, fake_cloud, web_spec, event_db):
    orphan = dataclasses.replace(web_spec, name="orphan", as_group_name="")
    members = await cloud_reader.list_group_members([orphan])
    assert members == {}
    assert fake_cloud.group_calls == 0
    assert any(e["virtual_server"] == "orphan" and e["level"] == "WARN" for e in event_db.latest_events())


@pytest.mark.asyncio
async def test_missing_group_yields_empty_membership(cloud_reader, web_spec):
    assert await cloud_reader.list_group_members([web_spec]) == {"web": []}


@pytest.mark.asyncio
async def test_group_lookup_failure_propagates(cloud_reader, fake_cloud, web_spec):
    fake_cloud.group_failures = 1
    with pytest.raises(CloudInventoryError):
        await cloud_reader.list_group_members([web_spec])


@pytest.mark.asyncio
async def test_resolve_addresses_by_address_type(cloud_reader, fake_cloud, web_spec):
    public_spec = dataclasses.replace(web_spec, name="web-public", address_type="public")
    fake_cloud.launch("web-asg", "i-1", private="10.0.0.1", public="54.1.1.1")
    fake_cloud.launch("web-asg", "i-2")

    resolved = await cloud_reader.resolve_addresses(
        {"web": ["i-1", "i-2"], "web-public": ["i-1"]}, [web_spec, public_spec]
    )
    assert resolved == {"web": {"i-1": "10.0.0.1", "i-2": None}, "web-public": {"i-1": "54.1.1.1"}}


@pytest.mark.asyncio
async def test_address_lookup_failure_leaves_addresses_unknown(cloud_reader, fake_cloud, web_spec):
    fake_cloud.launch("web-asg", "i-1", private="10.0.0.1")
    fake_cloud.address_failures = 1
    resolved = await cloud_reader.resolve_addresses({"web": ["i-1"]}, [web_spec])
    assert resolved == {"web": {"i-1": None}}


@pytest.mark.asyncio
async def test_resolve_single_instance(cloud_reader, fake_cloud, web_spec):
    fake_cloud.launch("web-asg", "i-1", private="10.0.0.1")
    assert await cloud_reader.resolve_instance_address(web_spec, "i-1") == "10.0.0.1"
    assert await cloud_reader.resolve_instance_address(web_spec, "i-404") is None


@pytest.mark.asyncio
async def test_boto3_provider_reads_groups_and_addresses():
    provider = Boto3CloudProvider("us-east-1", aws_access_key_id="testing", aws_secret_access_key="testing")
    await provider.connect()

    with Stubber(provider._autoscaling) as asg, Stubber(provider._ec2) as ec2:
        asg.add_response(
            "describe_auto_scaling_groups",
            {
                "AutoScalingGroups": [
                    {
                        "AutoScalingGroupName": "web-asg",
                        "MinSize": 1,
                        "MaxSize": 4,
                        "DesiredCapacity": 2,
                        "DefaultCooldown": 300,
                        "AvailabilityZones": ["us-east-1a"],
                        "HealthCheckType": "EC2",
                        "CreatedTime": datetime(2024, 1, 1, tzinfo=timezone.utc),
                        "Instances": [
                            {
                                "InstanceId": "i-1",
                                "AvailabilityZone": "us-east-1a",
                                "LifecycleState": "InService",
                                "HealthStatus": "Healthy",
                                "ProtectedFromScaleIn": False,
                            }
                        ],
                    }
                ]
            },
            {"AutoScalingGroupNames": ["web-asg"]},
        )
        ec2.add_response(
            "describe_instances",
            {"Reservations": [{"Instances": [{"InstanceId": "i-1", "PrivateIpAddress": "10.0.0.1"}]}]},
            {
                "InstanceIds": ["i-1"],
                "Filters": [{"Name": "instance-state-name", "Values": ["pending", "running"]}],
            },
        )

        (group,) = await provider.describe_group_membership(["web-asg"])
        (addresses,) = await provider.describe_instance_addresses(["i-1"])

    assert group.name == "web-asg"
    assert [(i.id, i.lifecycle_state) for i in group.instances] == [("i-1", "InService")]
    assert addresses.select("private") == "10.0.0.1"
    assert addresses.select("public") is None


@pytest.mark.asyncio
async def test_boto3_provider_wraps_client_errors():
    provider = Boto3CloudProvider("us-east-1", aws_access_key_id="testing", aws_secret_access_key="testing")
    await provider.connect()

    with Stubber(provider._autoscaling) as asg:
        asg.add_client_error("describe_auto_scaling_groups", service_error_code="Throttling", http_status_code=400)
        with pytest.raises(CloudInventoryError):
            await provider.describe_group_membership(["web-asg"])
