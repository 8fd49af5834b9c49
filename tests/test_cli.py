import pytest

from portrelay import cli
from portrelay.core.models import ForwardRule

TARGET_IP = "203.0.113.9"


@pytest.fixture
def run(monkeypatch, service):
    """Runs the CLI against the fake-backed service and returns (exit code, stdout, stderr)."""
    monkeypatch.setenv("RELAY_TARGET_IP", TARGET_IP)
    monkeypatch.setattr(cli, "preflight", lambda: None)
    monkeypatch.setattr(cli, "build_service", lambda config: service)

    def invoke(capsys, *argv):
        code = cli.main(list(argv))
        captured = capsys.readouterr()
        return code, captured.out, captured.err

    return invoke


@pytest.fixture
def answers(monkeypatch):
    """Feeds canned answers to input()."""
    queue = []

    def fake_input(prompt=""):
        return queue.pop(0)

    monkeypatch.setattr("builtins.input", fake_input)
    return queue


class TestAddCommands:
    def test_add(self, run, capsys, iptables):
        code, out, _ = run(capsys, "add", "3389")
        assert code == 0
        assert "[✓]" in out
        assert "198.51.100.7:3389" in out
        assert iptables.list_forwarding_rules() == [ForwardRule(3389, TARGET_IP, 3389)]

    def test_add_conflict(self, run, capsys, iptables):
        code, out, err = run(capsys, "add", "22")
        assert code == 1
        assert "not available" in err
        assert "portrelay auto 22" in out
        assert iptables.mutations == []

    def test_auto(self, run, capsys, iptables):
        code, out, _ = run(capsys, "auto", "22")
        assert code == 0
        assert "assigned automatically" in out
        assert iptables.find_rule(23) == ForwardRule(23, TARGET_IP, 22)

    def test_map(self, run, capsys, iptables):
        code, out, _ = run(capsys, "map", "80", "8080")
        assert code == 0
        assert "Clients should connect to 198.51.100.7:8080" in out

    def test_failed_change(self, run, capsys, iptables):
        iptables.fail_on("-A", "FORWARD")
        code, _, err = run(capsys, "add", "3389")
        assert code == 1
        assert "partial_failure" in err
        assert "rolled back: yes" in err

    def test_range(self, run, capsys, scanner):
        scanner.bound.add(8001)
        code, out, _ = run(capsys, "range", "8000", "8002")
        assert code == 0
        assert "2 succeeded, 1 failed" in out
        assert "8001:" in out

    def test_large_range_needs_confirmation(self, run, capsys, answers, iptables):
        answers.append("n")
        code, out, _ = run(capsys, "range", "10000", "11500")
        assert code == 1
        assert iptables.mutations == []

    def test_bad_port_argument(self, run, capsys):
        with pytest.raises(SystemExit) as exc:
            run(capsys, "add", "70000")
        assert exc.value.code == 2


class TestChangeCommands:
    @pytest.fixture(autouse=True)
    def existing(self, iptables):
        iptables.seed_redirect(3389, 3389)
        iptables.seed_accept(3389)

    def test_modify(self, run, capsys, iptables):
        code, out, _ = run(capsys, "modify", "3389", "3390")
        assert code == 0
        assert iptables.list_forwarding_rules() == [ForwardRule(3389, TARGET_IP, 3390)]

    def test_modify_relay_conflict(self, run, capsys, iptables):
        code, out, err = run(capsys, "modify", "3389", "3389", "22")
        assert code == 1
        assert "system_bound" in err
        assert "Used by a local process" in out
        assert "--force" in out
        assert iptables.mutations == []

        code, _, _ = run(capsys, "modify", "3389", "3389", "22", "--force")
        assert code == 0
        assert iptables.find_rule(22) is not None

    def test_modify_unknown(self, run, capsys):
        code, _, err = run(capsys, "modify", "4444", "4445")
        assert code == 1
        assert "No forwarding rule exists at relay port 4444" in err

    def test_remove_declined(self, run, capsys, answers, iptables):
        answers.append("n")
        code, out, _ = run(capsys, "remove", "3389")
        assert code == 0
        assert "cancelled" in out
        assert iptables.mutations == []

    def test_remove_confirmed(self, run, capsys, answers, iptables):
        answers.append("y")
        code, _, _ = run(capsys, "remove", "3389")
        assert code == 0
        assert iptables.list_forwarding_rules() == []

    def test_remove_force(self, run, capsys, iptables):
        code, _, _ = run(capsys, "remove", "3389", "--force")
        assert code == 0
        assert iptables.list_forwarding_rules() == []

    def test_edit_target(self, run, capsys, answers, iptables):
        answers.extend(["1", "3390", "y"])
        code, out, _ = run(capsys, "edit", "3389")
        assert code == 0
        assert iptables.list_forwarding_rules() == [ForwardRule(3389, TARGET_IP, 3390)]

    def test_edit_both(self, run, capsys, answers, iptables):
        answers.extend(["3", "", "13389", "y"])
        code, _, _ = run(capsys, "edit", "3389")
        assert code == 0
        assert iptables.list_forwarding_rules() == [ForwardRule(13389, TARGET_IP, 3389)]

    def test_edit_cancel(self, run, capsys, answers, iptables):
        answers.append("4")
        code, out, _ = run(capsys, "edit", "3389")
        assert code == 0
        assert "Edit cancelled" in out
        assert iptables.mutations == []

    def test_edit_declined(self, run, capsys, answers, iptables):
        answers.extend(["2", "13389", "n"])
        code, out, _ = run(capsys, "edit", "3389")
        assert code == 0
        assert iptables.mutations == []

    def test_edit_invalid_choice(self, run, capsys, answers):
        answers.append("9")
        code, _, _ = run(capsys, "edit", "3389")
        assert code == 1

    def test_edit_invalid_port(self, run, capsys, answers, iptables):
        answers.extend(["1", "abc"])
        code, _, err = run(capsys, "edit", "3389")
        assert code == 1
        assert "Invalid new target port" in err
        assert iptables.mutations == []


class TestViews:
    def test_list(self, run, capsys, iptables):
        for port in (3389, 443, 8443, 51820):
            iptables.seed_redirect(port, port)
        code, out, _ = run(capsys, "list")
        assert code == 0
        assert "Total: 4" in out
        assert "1 more" in out

    def test_list_port(self, run, capsys, iptables):
        iptables.seed_redirect(8080, 80)
        code, out, _ = run(capsys, "list", "8080")
        assert code == 0
        assert f"-> {TARGET_IP}:80" in out

    def test_status(self, run, capsys):
        code, out, _ = run(capsys, "status")
        assert code == 0
        assert "IP forwarding: enabled" in out
        assert "in use (system_bound)" in out

    def test_check(self, run, capsys):
        code, out, _ = run(capsys, "check", "22")
        assert code == 0
        assert "system_bound" in out

    def test_find_free(self, run, capsys, scanner):
        scanner.bound.add(40000)
        code, out, _ = run(capsys, "find-free")
        assert code == 0
        assert "Available port: 40001" in out

    def test_find_free_exhausted(self, run, capsys, scanner):
        scanner.bound.update(range(5000, 5050))
        code, _, err = run(capsys, "find-free", "5000")
        assert code == 1
        assert "No available port" in err

    def test_cleanup(self, run, capsys, iptables):
        iptables.seed_redirect(3389, 3389)
        iptables.seed_redirect(3389, 3390)
        code, out, _ = run(capsys, "cleanup")
        assert code == 0
        assert "claimed by 2 rules" in out

    def test_test_unknown_rule(self, run, capsys):
        code, _, err = run(capsys, "test", "3389")
        assert code == 1
        assert "No forwarding rule" in err


class TestHousekeeping:
    def test_save_and_backup(self, run, capsys, config, tmp_path):
        code, out, _ = run(capsys, "save")
        assert code == 0
        assert (tmp_path / "rules.v4").exists()

        code, out, _ = run(capsys, "backup")
        assert code == 0
        assert len(list((tmp_path / "backups").glob("iptables_backup_*.txt"))) == 1

    def test_restore_missing_file(self, run, capsys):
        code, _, err = run(capsys, "restore")
        assert code == 1
        assert "does not exist" in err

    def test_info_skips_preflight(self, run, capsys, monkeypatch):
        def fail():
            raise AssertionError("preflight should not run")

        monkeypatch.setattr(cli, "preflight", fail)
        code, out, _ = run(capsys, "info")
        assert code == 0
        assert "198.51.100.7" in out

    def test_serve_requires_key(self, run, capsys, config):
        config.admin_api_key = ""
        code, _, err = run(capsys, "serve")
        assert code == 1
        assert "RELAY_ADMIN_API_KEY" in err

    def test_missing_target_ip(self, monkeypatch):
        monkeypatch.delenv("RELAY_TARGET_IP", raising=False)
        with pytest.raises(SystemExit) as exc:
            cli.main(["status"])
        assert exc.value.code == 1
