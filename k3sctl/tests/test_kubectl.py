import pytest

from k3sctl.errors import ConnectivityError, RemoteCommandError
from k3sctl.modules.k3s.kubectl import Kubectl, api_unreachable
from k3sctl.modules.ssh import CommandResult

from conftest import CONTROL_PLANE

REFUSED = ("The connection to the server 127.0.0.1:6443 was refused - "
           "did you specify the right host or port?")


def _kubectl_hosts(fleet):
    return [host for host, command in fleet.calls if "k3s kubectl" in command]


def test_stopped_api_server_falls_over_to_next_host(running_fleet):
    running_fleet.fail_on(CONTROL_PLANE[0], "k3s kubectl", stderr=REFUSED)
    kubectl = Kubectl(running_fleet, CONTROL_PLANE)

    names = [node.name for node in kubectl.nodes()]

    assert "cp-1" in names
    assert _kubectl_hosts(running_fleet) == CONTROL_PLANE[:2]


def test_answering_host_is_preferred_afterwards(running_fleet):
    running_fleet.fail_on(CONTROL_PLANE[0], "k3s kubectl", stderr=REFUSED)
    kubectl = Kubectl(running_fleet, CONTROL_PLANE)

    kubectl.nodes()
    kubectl.unhealthy_pods()

    assert _kubectl_hosts(running_fleet) == [CONTROL_PLANE[0], CONTROL_PLANE[1], CONTROL_PLANE[1]]


def test_unreachable_host_is_skipped(running_fleet):
    running_fleet.unreachable.add(CONTROL_PLANE[0])

    assert Kubectl(running_fleet, CONTROL_PLANE).node_name_for(CONTROL_PLANE[2]) == "cp-3"


def test_ordinary_failure_does_not_fall_over(running_fleet):
    running_fleet.fail_on(CONTROL_PLANE[0], "drain worker-1", stderr="timed out waiting for the condition")
    kubectl = Kubectl(running_fleet, CONTROL_PLANE)

    result = kubectl.drain("worker-1", 30)

    assert not result.ok
    assert _kubectl_hosts(running_fleet) == [CONTROL_PLANE[0]]


def test_every_api_server_down_raises(running_fleet):
    running_fleet.fail_on(None, "k3s kubectl", stderr=REFUSED)

    with pytest.raises(RemoteCommandError) as excinfo:
        Kubectl(running_fleet, CONTROL_PLANE).nodes()

    assert excinfo.value.host == CONTROL_PLANE[2]
    assert _kubectl_hosts(running_fleet) == CONTROL_PLANE


def test_every_host_unreachable_raises_connectivity_error(running_fleet):
    running_fleet.unreachable.update(CONTROL_PLANE)

    with pytest.raises(ConnectivityError):
        Kubectl(running_fleet, CONTROL_PLANE).nodes()


@pytest.mark.parametrize("result, expected", [
    (CommandResult(1, "", REFUSED), True),
    (CommandResult(1, "", "Error from server (NotFound): nodes \"x\" not found"), False),
    (CommandResult(0, "connection refused", ""), False),
])
def test_api_unreachable(result, expected):
    assert api_unreachable(result) is expected
