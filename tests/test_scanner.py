import subprocess

import pytest

from portrelay.system.scanner import HostPortScanner

SS_OUTPUT = """State  Recv-Q Send-Q Local Address:Port  Peer Address:Port Process
LISTEN 0      128          0.0.0.0:22         0.0.0.0:*     users:(("sshd",pid=812,fd=3))
LISTEN 0      4096       127.0.0.1:5000       0.0.0.0:*     users:(("uvicorn",pid=990,fd=7))
LISTEN 0      511             [::]:443           [::]:*     users:(("nginx",pid=1201,fd=8))
"""

NETSTAT_OUTPUT = """Active Internet connections (only servers)
Proto Recv-Q Send-Q Local Address           Foreign Address         State       PID/Program name
tcp        0      0 0.0.0.0:22              0.0.0.0:*               LISTEN      812/sshd
tcp6       0      0 :::80                   :::*                    LISTEN      1201/nginx
"""


def fake_commands(outputs):
    """subprocess.run replacement: maps a command name to stdout, or to an exception to raise."""
    calls = []

    def run(command, **kwargs):
        calls.append(command[0])
        result = outputs[command[0]]
        if isinstance(result, Exception):
            raise result
        return subprocess.CompletedProcess(command, 0, result, "")

    return run, calls


class TestParsing:
    def test_parse_ss(self):
        ports = [port for port, _ in HostPortScanner()._parse_listing(SS_OUTPUT)]
        assert ports == [22, 5000, 443]

    def test_parse_netstat(self):
        listeners = HostPortScanner()._parse_listing(NETSTAT_OUTPUT)
        assert [port for port, _ in listeners] == [22, 80]
        assert listeners[1][1].endswith("1201/nginx")


class TestScanning:
    def test_uses_ss_first(self, monkeypatch):
        run, calls = fake_commands({"ss": SS_OUTPUT})
        monkeypatch.setattr(subprocess, "run", run)

        scanner = HostPortScanner()
        assert scanner.is_port_bound(443)
        assert not scanner.is_port_bound(4433)
        assert calls == ["ss", "ss"]

    def test_falls_back_to_netstat(self, monkeypatch):
        run, calls = fake_commands({"ss": FileNotFoundError("ss"), "netstat": NETSTAT_OUTPUT})
        monkeypatch.setattr(subprocess, "run", run)

        listeners = HostPortScanner().listeners(80)
        assert len(listeners) == 1
        assert "nginx" in listeners[0]
        assert calls == ["ss", "netstat"]

    def test_failed_command_falls_back(self, monkeypatch):
        run, _ = fake_commands({
            "ss": subprocess.CalledProcessError(1, ["ss"], stderr="Cannot open netlink socket"),
            "netstat": NETSTAT_OUTPUT,
        })
        monkeypatch.setattr(subprocess, "run", run)
        assert HostPortScanner().is_port_bound(22)

    def test_no_tool_means_nothing_bound(self, monkeypatch, caplog):
        run, _ = fake_commands({"ss": FileNotFoundError("ss"), "netstat": FileNotFoundError("netstat")})
        monkeypatch.setattr(subprocess, "run", run)

        assert HostPortScanner().get_listening_sockets() == []
        assert "Could not enumerate listening sockets" in caplog.text


@pytest.mark.parametrize("port", [22, 5000])
def test_listeners_match_exact_port(monkeypatch, port):
    run, _ = fake_commands({"ss": SS_OUTPUT})
    monkeypatch.setattr(subprocess, "run", run)
    lines = HostPortScanner().listeners(port)
    assert len(lines) == 1
    assert f":{port} " in lines[0]
