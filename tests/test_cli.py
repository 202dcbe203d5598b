import argparse

import pytest

from scriptspec.cli import ScriptRunner, collect_scripts, main, parse_condition
from scriptspec.errors import GenericError


class TestParseCondition:
    def test_values(self):
        assert parse_condition("docker=true") == ("docker", True)
        assert parse_condition("docker=0") == ("docker", False)
        assert parse_condition("env:CI=Yes") == ("env:CI", True)

    def test_invalid(self):
        with pytest.raises(argparse.ArgumentTypeError):
            parse_condition("docker")
        with pytest.raises(argparse.ArgumentTypeError):
            parse_condition("docker=maybe")


class TestCollectScripts:
    def test_directories_and_files(self, testdata, tmp_path):
        a = testdata("a.txt", "")
        b = testdata("b.txt", "")
        extra = tmp_path / "extra.script"
        extra.write_text("")
        assert collect_scripts([str(testdata.directory), str(extra)]) == [a, b, extra]

    def test_missing_path(self, tmp_path):
        with pytest.raises(GenericError, match="Test file not found"):
            collect_scripts([str(tmp_path / "nope")])


class TestScriptRunner:
    def test_statuses(self, testdata, params, capsys):
        runner = ScriptRunner(params)
        assert runner.run_one(testdata("pass.txt", "mkdir x\n")) == "pass"
        assert runner.run_one(testdata("fail.txt", "exists nothing\n")) == "fail"
        assert runner.run_one(testdata("skip.txt", "skip later\n")) == "skip"
        assert "SKIP: later" in capsys.readouterr().out

    def test_filter_by_number(self, testdata, params, capsys):
        scripts = [testdata("a.txt", "exists nothing\n"), testdata("b.txt", "mkdir x\n")]
        assert ScriptRunner(params).run_all(scripts, test_filter="2")
        out = capsys.readouterr().out
        assert "1 passed" in out
        assert "out of 1 tests" in out

    def test_filter_by_name(self, testdata, params, capsys):
        scripts = [testdata("alpha.txt", "mkdir x\n"), testdata("beta.txt", "exists nothing\n")]
        assert not ScriptRunner(params).run_all(scripts, test_filter="BETA")
        out = capsys.readouterr().out
        assert "Failed tests:" in out
        assert "beta.txt" in out


class TestMain:
    def test_passing_run(self, testdata, capsys):
        testdata("a.txt", "mkdir x\nexists x\n")
        assert main([str(testdata.directory)]) == 0
        out = capsys.readouterr().out
        assert "PASS" in out
        assert "All tests passed!" in out

    def test_failing_run(self, testdata, capsys):
        testdata("a.txt", "mkdir x\n")
        testdata("b.txt", "stdout nothing\n")
        assert main([str(testdata.directory)]) == 1
        out = capsys.readouterr().out
        assert "FAIL" in out
        assert "1 passed" in out
        assert "1 failed" in out

    def test_skipped_run_does_not_pass(self, testdata, capsys):
        testdata("a.txt", "skip\n")
        assert main([str(testdata.directory)]) == 1
        assert "1 skipped" in capsys.readouterr().out

    def test_missing_path(self, tmp_path, capsys):
        assert main([str(tmp_path / "nope")]) == 1
        assert "Test file not found" in capsys.readouterr().err

    def test_condition_flag(self, testdata):
        testdata("a.txt", "[feature] exists nothing\n")
        assert main([str(testdata.directory), "--condition", "feature=false"]) == 0

    def test_update_flag(self, testdata, py):
        path = testdata("a.txt", py("print('new')") + "\nstdout old\n")
        assert main([str(path), "--update"]) == 0
        assert path.read_text().endswith("stdout new\n")

    def test_update_from_environment(self, testdata, py, monkeypatch):
        monkeypatch.setenv("UPDATE_SCRIPTS", "true")
        path = testdata("a.txt", py("print('new')") + "\nstdout old\n")
        assert main([str(path)]) == 0
        assert path.read_text().endswith("stdout new\n")

    def test_preserve_work(self, testdata, tmp_path, capsys):
        root = tmp_path / "work"
        root.mkdir()
        testdata("a.txt", "mkdir kept\nexists nothing\n")
        args = [str(testdata.directory), "--preserve-work", "--workdir-root", str(root)]
        assert main(args) == 1
        (preserved,) = list(root.iterdir())
        assert (preserved / "kept").is_dir()
        assert "Work directory preserved at" in capsys.readouterr().err
