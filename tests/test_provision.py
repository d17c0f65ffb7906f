"""Tests for environment and dependency provisioning."""

import pytest

from stageci.dsl import cache, job
from stageci.errors import ProvisioningError, ScriptFailure, SetupFailure
from stageci.provision import (
    TIMEOUT_EXIT_CODE,
    ShellRunner,
    base_environment,
    expand_vars,
    first_failure,
    merge_environment,
    prepare,
    provision,
    run_script,
    run_setup,
)

from conftest import FakeRunner


class TestEnvironment:
    def test_job_keys_win(self):
        env = merge_environment({"A": "base", "B": "base"}, {"B": "global"}, {"B": "job", "C": "job"})

        assert env == {"A": "base", "B": "job", "C": "job"}

    def test_expansion_against_merged_env(self):
        env = merge_environment(
            {"CI_PROJECT_DIR": "/builds/app"},
            {"CARGO_HOME": "${CI_PROJECT_DIR}/cargo_cache"},
        )

        assert env["CARGO_HOME"] == "/builds/app/cargo_cache"

    def test_unknown_variables_left_alone(self):
        assert expand_vars("$NOPE/${ALSO_NOPE}", {}) == "$NOPE/${ALSO_NOPE}"
        assert expand_vars("$HOME/x", {"HOME": "/root"}) == "/root/x"


class TestPrepare:
    def test_merges_env_and_creates_workdirs(self, tmp_path):
        j = job(
            "test:cargo",
            "cargo test",
            cache=cache("cargo_cache", "target/", files=["Cargo.lock"]),
            variables={"CARGO_HOME": "${CI_PROJECT_DIR}/cargo_cache"},
        )

        ctx = prepare(j, {"CI_PROJECT_DIR": str(tmp_path)}, tmp_path)

        assert ctx.env["CARGO_HOME"] == f"{tmp_path}/cargo_cache"
        assert (tmp_path / "target").is_dir()
        assert not (tmp_path / "cargo_cache").exists()

    def test_idempotent(self, tmp_path):
        j = job("j", "x", cache=cache("target"), variables={"A": "1"})

        first = prepare(j, {"BASE": "1"}, tmp_path)
        second = prepare(j, {"BASE": "1"}, tmp_path)

        assert first == second

    def test_global_variables_between_base_and_job(self, tmp_path):
        j = job("j", "x", variables={"B": "job"})

        ctx = prepare(j, {"A": "base", "B": "base"}, tmp_path, global_variables={"A": "global", "B": "global"})

        assert ctx.env["A"] == "global"
        assert ctx.env["B"] == "job"

    def test_existing_file_is_not_an_error(self, tmp_path):
        (tmp_path / "Cargo.lock").write_text("x")
        j = job("j", "x", cache=cache("Cargo.lock"))

        prepare(j, {}, tmp_path)

        assert (tmp_path / "Cargo.lock").is_file()

    def test_file_cache_path_is_left_for_the_job(self, tmp_path):
        j = job("cov", "pytest --cov-report=xml:reports/coverage.xml", cache=cache("reports/coverage.xml", "build/"))

        ctx = prepare(j, {}, tmp_path)

        assert (tmp_path / "reports").is_dir()
        assert not (tmp_path / "reports" / "coverage.xml").exists()
        assert (tmp_path / "build").is_dir()
        assert ctx.workdirs == ((tmp_path / "reports").resolve(), (tmp_path / "build").resolve())

    def test_unrecoverable_filesystem_error(self, tmp_path):
        (tmp_path / "blocker").write_text("a file, not a directory")
        j = job("j", "x", cache=cache("blocker/target/"))

        with pytest.raises(ProvisioningError):
            prepare(j, {}, tmp_path)

    def test_missing_project_dir(self, tmp_path):
        with pytest.raises(ProvisioningError):
            prepare(job("j", "x"), {}, tmp_path / "gone")


class TestCommands:
    def test_first_failure_short_circuits(self, tmp_path):
        runner = FakeRunner(exit_codes={"b": 3})

        failed = first_failure(["a", "b", "c"], {}, tmp_path, runner)

        assert failed.command == "b"
        assert failed.exit_code == 3
        assert runner.commands == ["a", "b"]

    def test_setup_failure_stops_before_script(self, tmp_path):
        runner = FakeRunner(exit_codes={"apt-get install clang": 100})
        j = job("j", "cargo test", before_script=["mkdir -p cargo_cache", "apt-get install clang", "git clone x"])

        with pytest.raises(SetupFailure) as exc:
            provision(j, {}, tmp_path, runner)

        assert exc.value.exit_code == 100
        assert exc.value.kind == "setup_failure"
        assert runner.commands == ["mkdir -p cargo_cache", "apt-get install clang"]

    def test_script_failure_reports_first_failing_status(self, tmp_path):
        runner = FakeRunner(exit_codes={"cargo build": 101, "cargo test": 2})
        j = job("j", "cargo build", "cargo test")

        ctx = prepare(j, {}, tmp_path)
        run_setup(ctx, runner)
        with pytest.raises(ScriptFailure) as exc:
            run_script(ctx, runner)

        assert exc.value.exit_code == 101
        assert "cargo build" in str(exc.value)
        assert runner.commands == ["cargo build"]

    def test_commands_see_merged_env(self, tmp_path):
        runner = FakeRunner()
        j = job("j", "echo $CARGO_HOME", variables={"CARGO_HOME": "/cache"})

        provision(j, {"PATH": "/usr/bin"}, tmp_path, runner)

        assert runner.env_for("echo $CARGO_HOME") == {"PATH": "/usr/bin", "CARGO_HOME": "/cache"}


class TestShellRunner:
    def test_exit_status_and_output(self, tmp_path):
        result = ShellRunner().run("echo hello && exit 3", {"PATH": "/usr/bin:/bin"}, tmp_path)

        assert result.exit_code == 3
        assert "hello" in result.stdout

    def test_env_is_passed(self, tmp_path):
        result = ShellRunner().run('printf "%s" "$GREETING"', {"PATH": "/usr/bin:/bin", "GREETING": "hi"}, tmp_path)

        assert result.ok
        assert result.stdout == "hi"

    def test_timeout(self, tmp_path):
        result = ShellRunner(timeout=0.2).run("sleep 5", {"PATH": "/usr/bin:/bin"}, tmp_path)

        assert result.exit_code == TIMEOUT_EXIT_CODE


class TestBaseEnvironment:
    def test_pipeline_source_uses_gitlab_spelling(self, tmp_path):
        env = base_environment(
            project_dir=tmp_path,
            event_kind="merge_requests",
            cache_dir=tmp_path / "cache",
            cache_root_var="CI_CACHE_DIR",
            inherit={},
        )

        assert env["CI_PIPELINE_SOURCE"] == "merge_request_event"
        assert env["CI_CACHE_DIR"] == str((tmp_path / "cache").resolve())

    def test_other_sources_pass_through(self, tmp_path):
        env = base_environment(
            project_dir=tmp_path, event_kind="schedule", cache_dir=tmp_path, cache_root_var="X", inherit={}
        )

        assert env["CI_PIPELINE_SOURCE"] == "schedule"
