import yaml

from k3sctl.modules.k3s import Verdict, bootstrap_cluster, descriptor_from_mapping
from k3sctl.modules.k3s.bootstrap import LOCAL, BootstrapState, FleetBootstrap
from k3sctl.modules.k3s.installer import NGINX_CONFIG_PATH
from k3sctl.modules.k3s.loadbalancer import LoadBalancerConfig

from conftest import CONTROL_PLANE, PROXY, WORKERS, base_mapping


def _index(fleet, host, fragment):
    for position, (h, command) in enumerate(fleet.calls):
        if h == host and fragment in command:
            return position
    raise AssertionError(f"no '{fragment}' command on {host}")


def test_bootstrap_complete(descriptor, fleet, session_factory):
    report = bootstrap_cluster(session_factory(descriptor, fleet))

    assert report.verdict == Verdict.COMPLETE
    assert report.exit_code == 0
    assert report.actions(PROXY) == ['install-proxy', 'configure-load-balancer']
    assert report.actions(CONTROL_PLANE[0])[0] == 'init-control-plane'
    for address in CONTROL_PLANE[1:]:
        assert report.actions(address) == ['join-control-plane']
    for address in WORKERS:
        assert report.actions(address) == ['join-worker']
    assert report.actions(LOCAL) == ['merge-kubeconfig']


def test_control_plane_in_order_before_any_worker(descriptor, fleet, session_factory):
    bootstrap_cluster(session_factory(descriptor, fleet))

    installs = [_index(fleet, address, "server.sh") for address in CONTROL_PLANE]
    assert installs == sorted(installs)
    first_worker_call = min(
        position for position, (host, _) in enumerate(fleet.calls) if host in WORKERS
    )
    assert installs[-1] < first_worker_call


def test_first_node_initialises_and_others_join_it(descriptor, fleet, session_factory):
    bootstrap_cluster(session_factory(descriptor, fleet))

    first = fleet.calls[_index(fleet, CONTROL_PLANE[0], "server.sh")][1]
    assert "--cluster-init" in first
    for address in CONTROL_PLANE[1:]:
        command = fleet.calls[_index(fleet, address, "server.sh")][1]
        assert f"--server=https://{CONTROL_PLANE[0]}:6443" in command
        assert "--cluster-init" not in command


def test_agents_register_through_proxy(descriptor, fleet, session_factory):
    bootstrap_cluster(session_factory(descriptor, fleet))

    command = fleet.calls[_index(fleet, WORKERS[0], "agent.sh")][1]
    assert f"https://{PROXY}:6443" in command


def test_load_balancer_lists_every_control_plane_node(descriptor, fleet, session_factory):
    bootstrap_cluster(session_factory(descriptor, fleet))

    assert LoadBalancerConfig(fleet.files[(PROXY, NGINX_CONFIG_PATH)]).members == CONTROL_PLANE
    assert "reload-or-restart nginx" in fleet.commands(PROXY)[-1]


def test_worker_failure_is_partial(descriptor, fleet, session_factory):
    fleet.fail_on(WORKERS[0], "agent.sh")

    report = bootstrap_cluster(session_factory(descriptor, fleet))

    assert report.verdict == Verdict.PARTIAL_FAILURE
    assert report.exit_code == 0
    assert report.for_node(WORKERS[0])[0].failed
    assert report.actions(WORKERS[1]) == ['join-worker']
    assert not report.for_node(WORKERS[1])[0].failed


def test_worker_upload_failure_is_partial(descriptor, fleet, session_factory):
    fleet.failed_uploads.add(WORKERS[0])

    report = bootstrap_cluster(session_factory(descriptor, fleet))

    assert report.verdict == Verdict.PARTIAL_FAILURE
    failed = report.for_node(WORKERS[0])[0]
    assert failed.failed and "Transfer" in failed.detail
    assert WORKERS[1] in fleet.nodes
    assert report.actions(LOCAL) == ['merge-kubeconfig']


def test_worker_connection_drop_is_partial(descriptor, fleet, session_factory):
    fleet.drop_on(WORKERS[1], "agent.sh")

    report = bootstrap_cluster(session_factory(descriptor, fleet))

    assert report.verdict == Verdict.PARTIAL_FAILURE
    assert report.for_node(WORKERS[1])[0].failed
    assert WORKERS[0] in fleet.nodes


def test_control_plane_failure_aborts_before_workers(descriptor, fleet, session_factory):
    fleet.fail_on(CONTROL_PLANE[1], "server.sh")

    bootstrap = FleetBootstrap(session_factory(descriptor, fleet))
    report = bootstrap.run()

    assert report.verdict == Verdict.ABORTED
    assert report.exit_code == 1
    assert "journalctl -u k3s" in report.remediation
    assert bootstrap.state == BootstrapState.PROXY_READY
    assert not fleet.touched(CONTROL_PLANE[2])
    assert not any(fleet.touched(address) for address in WORKERS)


def test_control_plane_never_ready_aborts(descriptor, fleet, session_factory):
    fleet.ready_on_install = False

    report = bootstrap_cluster(session_factory(descriptor, fleet))

    assert report.verdict == Verdict.ABORTED
    assert "Timed out" in report.for_node(CONTROL_PLANE[0])[0].detail
    assert not fleet.touched(CONTROL_PLANE[1])


def test_proxy_failure_aborts(descriptor, fleet, session_factory):
    fleet.fail_on(PROXY, "proxy.sh")

    report = bootstrap_cluster(session_factory(descriptor, fleet))

    assert report.verdict == Verdict.ABORTED
    assert not any(fleet.touched(address) for address in CONTROL_PLANE)


def test_storage_skipped_without_mount_path(fleet, session_factory):
    descriptor = descriptor_from_mapping(base_mapping(storage={}))

    report = bootstrap_cluster(session_factory(descriptor, fleet))

    storage = [o for o in report.outcomes if o.action == 'verify-storage']
    assert [o.status.value for o in storage] == ['skipped']
    assert report.verdict == Verdict.COMPLETE


def test_storage_claim_never_binds_aborts(descriptor, fleet, session_factory):
    fleet.pvc_phase = "Pending"

    report = bootstrap_cluster(session_factory(descriptor, fleet))

    assert report.verdict == Verdict.ABORTED
    assert "NFS export" in report.remediation
    assert any("delete pvc" in c for c in fleet.commands(CONTROL_PLANE[0]))
    assert 'merge-kubeconfig' not in report.actions()


def test_kubeconfig_merged_locally(descriptor, fleet, tmp_path, session_factory):
    bootstrap_cluster(session_factory(descriptor, fleet))

    config = yaml.safe_load((tmp_path / "kube" / "config").read_text())
    assert config['current-context'] == "lab"
    assert config['clusters'][0]['cluster']['server'] == f"https://{PROXY}:6443"


def test_join_token_registered_as_secret(descriptor, fleet, session_factory):
    bootstrap_cluster(session_factory(descriptor, fleet))
    assert descriptor.token in fleet.secrets
