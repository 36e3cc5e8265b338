import pytest

from k3sctl.errors import LoadBalancerError
from k3sctl.modules.k3s.installer import NGINX_CONFIG_PATH, nginx_config
from k3sctl.modules.k3s.loadbalancer import LoadBalancerConfig, UpstreamTransaction

from conftest import CONTROL_PLANE, PROXY

HAND_WRITTEN = """\
stream {
    upstream k3s_servers {
        server 10.0.0.11:6443 max_fails=3;
        server 10.0.0.12:6443;
    }
    server { listen 6443; proxy_pass k3s_servers; }
}
"""


def test_parse_members():
    config = LoadBalancerConfig(HAND_WRITTEN)
    assert config.members == ["10.0.0.11", "10.0.0.12"]
    assert not config.changed


def test_add_member_is_idempotent():
    config = LoadBalancerConfig(HAND_WRITTEN)
    assert config.add_member("10.0.0.13")
    assert not config.add_member("10.0.0.13")
    assert config.members == ["10.0.0.11", "10.0.0.12", "10.0.0.13"]


def test_render_preserves_rest_of_file():
    config = LoadBalancerConfig(HAND_WRITTEN)
    config.add_member("10.0.0.13")
    rendered = config.render()
    assert "server 10.0.0.13:6443;" in rendered
    assert "proxy_pass k3s_servers;" in rendered
    assert LoadBalancerConfig(rendered).members == ["10.0.0.11", "10.0.0.12", "10.0.0.13"]


def test_cannot_remove_last_member():
    config = LoadBalancerConfig(nginx_config(["10.0.0.11"]))
    with pytest.raises(LoadBalancerError):
        config.remove_member("10.0.0.11")


def test_missing_upstream_block():
    with pytest.raises(LoadBalancerError):
        LoadBalancerConfig("events {}\n")


def test_template_renders_members():
    config = LoadBalancerConfig(nginx_config(CONTROL_PLANE))
    assert config.members == CONTROL_PLANE


def test_transaction_applies_and_reloads(running_fleet):
    with UpstreamTransaction(running_fleet, PROXY) as lb:
        lb.add_member("10.0.0.14")

    live = running_fleet.files[(PROXY, NGINX_CONFIG_PATH)]
    assert "server 10.0.0.14:6443;" in live
    commands = running_fleet.commands(PROXY)
    assert any(c.startswith("sudo cp -p") for c in commands)
    assert any("nginx -t" in c and "-c" in c for c in commands)
    assert commands[-1] == "sudo systemctl reload-or-restart nginx"


def test_transaction_without_changes_does_nothing(running_fleet):
    before = running_fleet.files[(PROXY, NGINX_CONFIG_PATH)]
    with UpstreamTransaction(running_fleet, PROXY) as lb:
        lb.add_member(CONTROL_PLANE[0])
    assert running_fleet.files[(PROXY, NGINX_CONFIG_PATH)] == before
    assert not any("reload" in c for c in running_fleet.commands(PROXY))


def test_invalid_candidate_leaves_live_config_and_never_reloads(running_fleet):
    before = running_fleet.files[(PROXY, NGINX_CONFIG_PATH)]
    running_fleet.staged_nginx_ok = False

    with pytest.raises(LoadBalancerError):
        with UpstreamTransaction(running_fleet, PROXY) as lb:
            lb.add_member("10.0.0.14")

    assert running_fleet.files[(PROXY, NGINX_CONFIG_PATH)] == before
    assert not any("reload" in c for c in running_fleet.commands(PROXY))


def test_failed_live_check_restores_previous_config(running_fleet):
    before = running_fleet.files[(PROXY, NGINX_CONFIG_PATH)]
    running_fleet.live_nginx_ok = False

    with pytest.raises(LoadBalancerError):
        with UpstreamTransaction(running_fleet, PROXY) as lb:
            lb.add_member("10.0.0.14")

    assert running_fleet.files[(PROXY, NGINX_CONFIG_PATH)] == before
    assert not any("reload" in c for c in running_fleet.commands(PROXY))


def test_missing_config_without_default_raises(fleet):
    with pytest.raises(LoadBalancerError):
        with UpstreamTransaction(fleet, PROXY) as lb:
            lb.add_member("10.0.0.14")


def test_default_used_on_fresh_proxy(fleet):
    with UpstreamTransaction(fleet, PROXY, default=nginx_config(CONTROL_PLANE)) as lb:
        lb.set_members(CONTROL_PLANE)
    assert LoadBalancerConfig(fleet.files[(PROXY, NGINX_CONFIG_PATH)]).members == CONTROL_PLANE
