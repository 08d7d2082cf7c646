from __future__ import annotations

from omnisync.infrastructure.health_probes import SocketConnectivityProbe, StaticConnectivityProbe


class FakeSocket:
    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        return None


def test_socket_probe_connects_to_host_and_port() -> None:
    calls = []

    def _connector(address, timeout):
        calls.append((address, timeout))
        return FakeSocket()

    probe = SocketConnectivityProbe("demo.supabase.co", 443, connector=_connector)

    assert probe.check(timeout_seconds=2.0) is True
    assert calls == [(("demo.supabase.co", 443), 2.0)]


def test_socket_probe_reports_offline_on_os_error() -> None:
    def _connector(address, timeout):
        raise OSError("unreachable")

    assert SocketConnectivityProbe("demo.supabase.co", connector=_connector).check() is False
    assert SocketConnectivityProbe("").check() is False


def test_probe_from_url_resolves_default_ports() -> None:
    https_probe = SocketConnectivityProbe.from_url("https://demo.supabase.co")
    http_probe = SocketConnectivityProbe.from_url("http://localhost:54321")
    bare_probe = SocketConnectivityProbe.from_url("demo.supabase.co")

    assert (https_probe._host, https_probe._port) == ("demo.supabase.co", 443)
    assert (http_probe._host, http_probe._port) == ("localhost", 54321)
    assert (bare_probe._host, bare_probe._port) == ("demo.supabase.co", 443)


def test_static_probe_returns_fixed_answer() -> None:
    assert StaticConnectivityProbe().check() is False
    assert StaticConnectivityProbe(online=True).check(timeout_seconds=0.1) is True
