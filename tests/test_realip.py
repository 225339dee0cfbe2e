import pytest
from werkzeug.test import Client

from contrafactory.realip import (
    RealIPConfig,
    RealIPMiddleware,
    extract_client_ip,
    extract_ip,
    get_client_ip,
    is_trusted_proxy,
    parse_trusted_networks,
)


def _run(config, remote_addr, headers=None):
    captured = []

    def app(environ, start_response):
        captured.append(get_client_ip(environ))
        start_response("200 OK", [("Content-Type", "text/plain")])
        return [b"ok"]

    client = Client(RealIPMiddleware(app, config))
    response = client.get(
        "/", headers=headers or {}, environ_overrides={"REMOTE_ADDR": remote_addr}
    )
    assert response.status_code == 200
    return captured[0]


def test_trust_proxy_disabled():
    config = RealIPConfig(trust_proxy=False, trusted_proxies=["10.0.0.0/8"])
    ip = _run(config, "192.168.1.100:12345", {"X-Forwarded-For": "203.0.113.50"})
    assert ip == "192.168.1.100"


def test_trusted_proxy_uses_forwarded_for():
    config = RealIPConfig(trust_proxy=True, trusted_proxies=["10.0.0.0/8", "192.168.0.0/16"])
    ip = _run(config, "10.0.0.1:12345", {"X-Forwarded-For": "203.0.113.50, 10.0.0.5"})
    assert ip == "203.0.113.50"


def test_untrusted_proxy_uses_remote_addr():
    config = RealIPConfig(trust_proxy=True, trusted_proxies=["10.0.0.0/8"])
    ip = _run(config, "192.168.1.100:12345", {"X-Forwarded-For": "203.0.113.50"})
    assert ip == "192.168.1.100"


def test_x_real_ip_fallback():
    config = RealIPConfig(trust_proxy=True, trusted_proxies=["10.0.0.0/8"])
    ip = _run(config, "10.0.0.1:12345", {"X-Real-IP": "203.0.113.50"})
    assert ip == "203.0.113.50"


def test_multiple_proxies_in_chain():
    config = RealIPConfig(trust_proxy=True, trusted_proxies=["10.0.0.0/8", "172.16.0.0/12"])
    ip = _run(
        config, "10.0.0.1:12345", {"X-Forwarded-For": "203.0.113.50, 172.16.0.1, 10.0.0.2"}
    )
    assert ip == "203.0.113.50"


def test_all_trusted_proxies_returns_leftmost():
    config = RealIPConfig(
        trust_proxy=True,
        trusted_proxies=["10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16"],
    )
    ip = _run(
        config, "10.0.0.1:12345", {"X-Forwarded-For": "192.168.1.1, 172.16.0.1, 10.0.0.2"}
    )
    assert ip == "192.168.1.1"


def test_no_forwarded_header():
    config = RealIPConfig(trust_proxy=True, trusted_proxies=["10.0.0.0/8"])
    assert _run(config, "10.0.0.1:12345") == "10.0.0.1"


def test_empty_hops_are_skipped():
    networks = parse_trusted_networks(["10.0.0.0/8"])
    environ = {
        "REMOTE_ADDR": "10.0.0.1:12345",
        "HTTP_X_FORWARDED_FOR": "203.0.113.50, , 10.0.0.5",
    }
    assert extract_client_ip(environ, True, networks) == "203.0.113.50"


def test_get_client_ip_without_middleware():
    assert get_client_ip({"REMOTE_ADDR": "192.168.1.100:12345"}) == "192.168.1.100"


@pytest.mark.parametrize(
    ("address", "expected"),
    [
        ("192.168.1.100:12345", "192.168.1.100"),
        ("10.0.0.1:80", "10.0.0.1"),
        ("192.168.1.100", "192.168.1.100"),
        ("[::1]:8080", "::1"),
        ("::1", "::1"),
    ],
)
def test_extract_ip(address, expected):
    assert extract_ip(address) == expected


@pytest.mark.parametrize(
    ("ip", "expected"),
    [
        ("10.0.0.1", True),
        ("10.255.255.255", True),
        ("172.16.0.1", True),
        ("172.31.255.255", True),
        ("192.168.0.1", True),
        ("192.168.255.255", True),
        ("203.0.113.50", False),
        ("8.8.8.8", False),
        ("172.32.0.1", False),
        ("invalid", False),
    ],
)
def test_is_trusted_proxy(ip, expected):
    networks = parse_trusted_networks(["10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16"])
    assert len(networks) == 3
    assert is_trusted_proxy(ip, networks) is expected


def test_parse_single_address_and_skip_invalid():
    networks = parse_trusted_networks(["10.0.0.1", "bogus"])
    assert len(networks) == 1
    assert is_trusted_proxy("10.0.0.1", networks) is True
    assert is_trusted_proxy("10.0.0.2", networks) is False


def test_middleware_ignores_trusted_list_when_not_trusting():
    middleware = RealIPMiddleware(lambda e, s: [], RealIPConfig(False, ["10.0.0.0/8"]))
    assert middleware.networks == []