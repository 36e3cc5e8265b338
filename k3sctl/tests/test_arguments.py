from k3sctl.modules.k3s import descriptor_from_mapping
from k3sctl.modules.k3s.arguments import agent_args, join_url, node_args, server_args

from conftest import CONTROL_PLANE, PROXY, WORKERS, base_mapping


def _descriptor(**network):
    data = base_mapping()
    data["network"].update(network)
    data["kubernetes"].update({
        "tls_san": ["k3s.example.com"],
        "disable": ["traefik", "servicelb", "traefik"],
        "server_args": ["--write-kubeconfig-mode=644", "--write-kubeconfig-mode=644"],
        "agent_args": ["--node-label=tier=general"],
    })
    return descriptor_from_mapping(data)


def test_first_control_plane_initialises_cluster():
    args = server_args(_descriptor(), True)
    assert args[0] == "--cluster-init"
    assert not any(a.startswith("--server=") for a in args)


def test_other_control_plane_joins_first():
    args = server_args(_descriptor(), False)
    assert args[0] == f"--server=https://{CONTROL_PLANE[0]}:6443"
    assert "--cluster-init" not in args


def test_init_flag_is_the_only_difference():
    descriptor = _descriptor()
    assert server_args(descriptor, True)[1:] == server_args(descriptor, False)[1:]


def test_networking_flags_only_when_set():
    args = server_args(_descriptor(), True)
    assert not any(a.startswith(("--service-cidr", "--cluster-cidr", "--cluster-dns")) for a in args)

    args = server_args(_descriptor(service_cidr="10.43.0.0/16", pod_cidr="10.42.0.0/16",
                                   cluster_dns="10.43.0.10", max_pods=150), True)
    assert "--service-cidr=10.43.0.0/16" in args
    assert "--cluster-cidr=10.42.0.0/16" in args
    assert "--cluster-dns=10.43.0.10" in args
    assert "--kubelet-arg=max-pods=150" in args


def test_tls_san_and_disable_are_sorted_and_unique():
    args = server_args(_descriptor(), True)
    sans = [a for a in args if a.startswith("--tls-san=")]
    assert sans == sorted(set(sans))
    assert f"--tls-san={PROXY}" in sans
    disabled = [a for a in args if a.startswith("--disable=")]
    assert disabled == ["--disable=servicelb", "--disable=traefik"]


def test_extra_args_appended_once():
    args = server_args(_descriptor(), True)
    assert args.count("--write-kubeconfig-mode=644") == 1
    assert args[-1] == "--write-kubeconfig-mode=644"


def test_token_never_in_arguments():
    descriptor = _descriptor()
    assert not any(descriptor.token in a for a in server_args(descriptor, True))


def test_agent_args_join_through_proxy():
    descriptor = _descriptor()
    args = agent_args(descriptor, join_url(descriptor.proxy))
    assert args == [f"--server=https://{PROXY}:6443", "--node-label=tier=general"]


def test_node_args_follow_role():
    descriptor = _descriptor()
    assert node_args(descriptor, CONTROL_PLANE[0])[0] == "--cluster-init"
    assert node_args(descriptor, CONTROL_PLANE[2])[0].startswith("--server=https://10.0.0.11")
    assert node_args(descriptor, WORKERS[0])[0] == f"--server=https://{PROXY}:6443"


def test_deterministic():
    descriptor = _descriptor()
    assert server_args(descriptor, False) == server_args(descriptor, False)
