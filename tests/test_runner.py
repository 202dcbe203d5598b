import pytest

import scriptspec
from scriptspec.errors import GenericError, ScriptError
from scriptspec.interpreter import RunState
from scriptspec.runner import (
    Builder,
    RunParams,
    discover_scripts,
    env_flag,
    resolve_files,
    run_script,
)


class TestDiscovery:
    def test_sorted_txt_files_only(self, testdata):
        testdata("b.txt", "")
        testdata("a.txt", "")
        testdata("notes.md", "")
        (testdata.directory / "nested.txt").mkdir()
        assert [p.name for p in discover_scripts(testdata.directory)] == ["a.txt", "b.txt"]

    def test_no_scripts(self, tmp_path):
        with pytest.raises(GenericError, match="No test files found matching pattern"):
            discover_scripts(tmp_path)

    def test_explicit_files(self, testdata, tmp_path):
        path = testdata("one.txt", "")
        assert resolve_files(testdata.directory, ["one.txt"]) == [path]
        assert resolve_files(tmp_path, [str(path)]) == [path]

    def test_explicit_files_errors(self, testdata):
        with pytest.raises(GenericError, match="No test files specified"):
            resolve_files(testdata.directory, [])
        with pytest.raises(GenericError, match="Test file not found: missing.txt"):
            resolve_files(testdata.directory, ["missing.txt"])
        (testdata.directory / "dir.txt").mkdir()
        with pytest.raises(GenericError, match="not a regular file"):
            resolve_files(testdata.directory, ["dir.txt"])


class TestRunParams:
    def test_update_scripts_from_environment(self, monkeypatch):
        monkeypatch.setenv("UPDATE_SCRIPTS", "TRUE")
        assert RunParams(probe_network=False).update_scripts
        monkeypatch.setenv("UPDATE_SCRIPTS", "0")
        assert not RunParams(probe_network=False).update_scripts
        monkeypatch.delenv("UPDATE_SCRIPTS")
        assert not env_flag("UPDATE_SCRIPTS")

    def test_explicit_setting_wins(self, monkeypatch):
        monkeypatch.setenv("UPDATE_SCRIPTS", "1")
        assert not RunParams(probe_network=False).with_update_scripts(False).update_scripts

    def test_default_conditions(self, params):
        assert "unix" in params.conditions
        assert "net" not in params.conditions


class TestRunScript:
    def test_pass(self, testdata, params):
        path = testdata("ok.txt", "exists data.txt\ncmp data.txt copy.txt\n"
                        "-- data.txt --\nx\n-- copy.txt --\nx\n")
        assert run_script(path, params).state is RunState.COMPLETED

    def test_failure(self, testdata, params):
        path = testdata("bad.txt", "\nexists nothing.txt\n")
        with pytest.raises(ScriptError) as exc_info:
            run_script(path, params)
        assert exc_info.value.script_file == str(path)
        assert exc_info.value.line_num == 2

    def test_parse_error(self, testdata, params):
        path = testdata("broken.txt", "[unix exists x\n")
        with pytest.raises(ScriptError, match="Unclosed condition bracket"):
            run_script(path, params)

    def test_skip(self, testdata, params):
        path = testdata("skip.txt", "skip 'not here'\n")
        with pytest.raises(ScriptError) as exc_info:
            run_script(path, params)
        assert exc_info.value.skipped

    def test_work_variable(self, testdata, params, py):
        code = "import os; print(os.environ['WORK'])"
        path = testdata("work.txt", py(code) + "\nstdout '^${WORK@R}$'\n")
        run_script(path, params)

    def test_setup_hook(self, testdata, params):
        seen = []

        def setup(env):
            seen.append(env.path("fixture.txt").read_text())
            env.set_env_var("FROM_SETUP", "yes")
            env.path("made-by-setup").write_text("")

        params.setup(setup)
        path = testdata("setup.txt", "exists made-by-setup\n-- fixture.txt --\nready\n")
        run_script(path, params)
        assert seen == ["ready"]

    def test_failing_setup_hook(self, testdata, params):
        def setup(env):
            raise RuntimeError("no database")

        params.setup(setup)
        path = testdata("setup.txt", "mkdir never\n")
        with pytest.raises(GenericError, match="Setup failed: no database"):
            run_script(path, params)

    def test_work_dir_removed(self, testdata, params, tmp_path):
        root = tmp_path / "work"
        root.mkdir()
        params.with_workdir_root(root)
        run_script(testdata("ok.txt", "mkdir x\n"), params)
        with pytest.raises(ScriptError):
            run_script(testdata("bad.txt", "exists nothing\n"), params)
        assert list(root.iterdir()) == []

    def test_preserve_work_on_failure(self, testdata, params, tmp_path, capsys):
        root = tmp_path / "work"
        root.mkdir()
        params.with_workdir_root(root).with_preserve_work_on_failure(True)
        with pytest.raises(ScriptError):
            run_script(testdata("bad.txt", "mkdir evidence\nexists nothing\n"), params)

        (preserved,) = list(root.iterdir())
        assert (preserved / "evidence").is_dir()
        assert f"Work directory preserved at: {preserved}" in capsys.readouterr().err

    def test_missing_workdir_root(self, testdata, params, tmp_path):
        params.with_workdir_root(tmp_path / "missing")
        with pytest.raises(GenericError, match="Workdir root directory does not exist"):
            run_script(testdata("ok.txt", "mkdir x\n"), params)

    def test_update_mode_rewrites_file(self, testdata, params, py):
        path = testdata("update.txt", py("print('fresh')") + "\r\nstdout stale\r\n")
        params.with_update_scripts(True)
        outcome = run_script(path, params)
        assert len(outcome.updates) == 1
        assert path.read_bytes().endswith(b"\r\nstdout fresh\r\n")


class TestBuilder:
    def test_runs_every_script(self, testdata, params):
        testdata("a.txt", "greet a\n")
        testdata("b.txt", "greet b\n")
        seen = []
        Builder(testdata.directory, params).command(
            "greet", lambda env, args: seen.extend(args)
        ).execute()
        assert seen == ["a", "b"]

    def test_first_failure_aborts(self, testdata, params):
        testdata("a.txt", "exists nothing\n")
        testdata("b.txt", "mkdir x\n")
        with pytest.raises(GenericError, match="Test '.*a.txt' failed: Error in") as exc_info:
            Builder(testdata.directory, params).execute()
        assert isinstance(exc_info.value.__cause__, ScriptError)

    def test_files_selection(self, testdata, params):
        testdata("a.txt", "exists nothing\n")
        testdata("b.txt", "mkdir x\n")
        builder = Builder(testdata.directory, params).files(["b.txt"])
        assert [p.name for p in builder.scripts()] == ["b.txt"]
        builder.execute()

    def test_conditions(self, testdata, params):
        testdata("a.txt", "[docker] exists nothing\n[!docker] mkdir x\n")
        Builder(testdata.directory, params).condition("docker", False).execute()

    def test_fluent_configuration(self, testdata, params, tmp_path):
        def setup(env):
            pass

        builder = (
            Builder(testdata.directory, params)
            .setup(setup)
            .update_scripts(True)
            .preserve_work_on_failure(True)
            .workdir_root(tmp_path)
        )
        assert builder.params.setup_fn is setup
        assert builder.params.update_scripts
        assert builder.params.preserve_work_on_failure
        assert builder.params.workdir_root == tmp_path

    def test_entry_point(self, testdata):
        testdata("a.txt", "mkdir x\nexists x\n")
        builder = scriptspec.testscript(testdata.directory)
        assert isinstance(builder, Builder)
        builder.execute()

    def test_run_single_script(self, testdata):
        outcome = scriptspec.run_test(testdata("a.txt", "mkdir x\n"))
        assert outcome.passed
