# tests/test_cli.py
import threading

import pytest

import doq_probe


class RecordingDialer:
    def __init__(self, accept=()):
        self.accept = set(accept)
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, address, port, config):
        with self._lock:
            self.calls.append((address, port))
        if address not in self.accept:
            raise ConnectionError("no DoQ here")


@pytest.fixture
def dialer(monkeypatch):
    d = RecordingDialer(accept={"10.0.0.2"})
    monkeypatch.setattr(doq_probe, "dial_quic", d)
    return d


@pytest.fixture
def input_file(tmp_path):
    p = tmp_path / "in.txt"
    p.write_text("10.0.0.1\nbad-line\n10.0.0.2\n")
    return p


def test_end_to_end_writes_only_reachable_address(dialer, input_file, tmp_path):
    out = tmp_path / "out.txt"
    doq_probe.main([str(input_file), str(out)])
    assert out.read_text() == "10.0.0.2\n"
    probed = {addr for addr, _ in dialer.calls}
    assert probed == {"10.0.0.1", "10.0.0.2"}


def test_default_ports_are_784_then_8853(dialer, input_file, tmp_path):
    doq_probe.main([str(input_file), str(tmp_path / "out.txt")])
    assert [p for a, p in dialer.calls if a == "10.0.0.1"] == [784, 8853]
    # 10.0.0.2 answers on the first port
    assert [p for a, p in dialer.calls if a == "10.0.0.2"] == [784]


def test_port853_flag(dialer, input_file, tmp_path):
    doq_probe.main(["--port853", str(input_file), str(tmp_path / "out.txt")])
    assert {p for _, p in dialer.calls} == {853}


def test_runs_are_cumulative(dialer, input_file, tmp_path):
    out = tmp_path / "out.txt"
    out.write_text("192.0.2.7\n")
    doq_probe.main([str(input_file), str(out)])
    doq_probe.main([str(input_file), str(out)])
    assert out.read_text().splitlines() == ["192.0.2.7", "10.0.0.2", "10.0.0.2"]


def test_output_file_created_if_absent(dialer, input_file, tmp_path):
    out = tmp_path / "new.txt"
    assert not out.exists()
    doq_probe.main(["--parallel", "1", str(input_file), str(out)])
    assert out.read_text() == "10.0.0.2\n"


def test_silent_by_default(dialer, input_file, tmp_path, capsys):
    doq_probe.main([str(input_file), str(tmp_path / "out.txt")])
    captured = capsys.readouterr()
    assert captured.out == ""
    assert captured.err == ""


def test_verbose_prints_summary(dialer, input_file, tmp_path, capsys):
    doq_probe.main(["-v", str(input_file), str(tmp_path / "out.txt")])
    stdout = capsys.readouterr().out
    assert "START |" in stdout
    assert "10.0.0.2" in stdout
    assert "DONE. probed=2 | reachable=1" in stdout


@pytest.mark.parametrize("argv", [[], ["only-one.txt"], ["a.txt", "b.txt", "c.txt"]])
def test_wrong_number_of_paths_exits_1(argv, capsys):
    with pytest.raises(SystemExit) as excinfo:
        doq_probe.main(argv)
    assert excinfo.value.code == 1
    assert "need 2 arguments" in capsys.readouterr().err


def test_missing_input_file_is_fatal(dialer, tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        doq_probe.main([str(tmp_path / "missing.txt"), str(tmp_path / "out.txt")])
    assert "cannot open input" in str(excinfo.value.code)
    assert dialer.calls == []


def test_unopenable_output_is_fatal(dialer, input_file, tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        doq_probe.main([str(input_file), str(tmp_path / "no-such-dir" / "out.txt")])
    assert "cannot open output" in str(excinfo.value.code)
    assert dialer.calls == []


def test_nonpositive_parallel_is_fatal(input_file, tmp_path):
    with pytest.raises(SystemExit):
        doq_probe.main(["--parallel", "0", str(input_file), str(tmp_path / "out.txt")])
