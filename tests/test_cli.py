"""Tests for the stageci command line."""

import hashlib

from click.testing import CliRunner

from stageci.cli import EXIT_LOAD_ERROR, cli


SIMPLE = """\
stages: [build, test]

build:
  stage: build
  script:
    - mkdir -p out && echo built > out/app
  cache:
    key:
      files: [deps.lock]
      prefix: build
    paths: [out]

test:
  stage: test
  only: [merge_requests]
  script:
    - test -f out/app
"""


def write_project(tmp_path, text=SIMPLE):
    (tmp_path / ".gitlab-ci.yml").write_text(text)
    (tmp_path / "deps.lock").write_text("lock")
    return tmp_path


def invoke(*args, env=None):
    return CliRunner().invoke(cli, list(args), env=env or {"CI_PIPELINE_SOURCE": "push"})


class TestRun:
    def test_successful_run(self, tmp_path):
        project = write_project(tmp_path)

        result = invoke("run", "--project-dir", str(project), "--event", "merge_request")

        assert result.exit_code == 0, result.output
        assert "RESULTS" in result.output
        assert (project / "out" / "app").exists()
        assert list((project / ".stageci" / "cache" / "build").glob("*.tar.gz"))

    def test_event_from_environment(self, tmp_path):
        project = write_project(tmp_path)

        result = invoke("run", "--project-dir", str(project), env={"CI_PIPELINE_SOURCE": "push"})

        assert result.exit_code == 0, result.output
        assert "skipped" in result.output

    def test_script_failure_exit_code(self, tmp_path):
        project = write_project(tmp_path, "fail:\n  script: [exit 7]\n")

        result = invoke("run", "--project-dir", str(project))

        assert result.exit_code == 1

    def test_setup_failure_exit_code(self, tmp_path):
        project = write_project(tmp_path, "fail:\n  before_script: [exit 7]\n  script: [echo never]\n")

        result = invoke("run", "--project-dir", str(project))

        assert result.exit_code == 2

    def test_load_error_is_fatal(self, tmp_path):
        project = write_project(tmp_path, "stages: [test]\njob:\n  stage: lint\n  script: [x]\n")

        result = invoke("run", "--project-dir", str(project))

        assert result.exit_code == EXIT_LOAD_ERROR
        assert "Undefined reference" in result.output

    def test_explicit_zero_cache_keep_disables_pruning(self, tmp_path):
        project = write_project(tmp_path)
        env = {"CI_PIPELINE_SOURCE": "push", "STAGECI_CACHE_KEEP": "1"}

        invoke("run", "--project-dir", str(project), "--cache-keep", "0", env=env)
        (project / "deps.lock").write_text("lock v2")
        result = invoke("run", "--project-dir", str(project), "--cache-keep", "0", env=env)

        assert result.exit_code == 0, result.output
        assert len(list((project / ".stageci" / "cache" / "build").glob("*.tar.gz"))) == 2

    def test_zero_workers_rejected(self, tmp_path):
        project = write_project(tmp_path)

        result = invoke("run", "--project-dir", str(project), "--workers", "0")

        assert result.exit_code == 2
        assert "--workers" in result.output


class TestPlan:
    def test_plan_lists_keys_and_skips(self, tmp_path):
        project = write_project(tmp_path)

        result = invoke("plan", "--project-dir", str(project), "--event", "push")

        digest = hashlib.sha256(b"lock").hexdigest()
        assert result.exit_code == 0, result.output
        assert f"cache=build:{digest}" in result.output
        assert "test/test (skipped:" in result.output


class TestCacheKey:
    def test_prints_key(self, tmp_path):
        project = write_project(tmp_path)

        result = invoke("cache-key", "build", "--project-dir", str(project))

        assert result.exit_code == 0
        assert result.output.strip() == "build:" + hashlib.sha256(b"lock").hexdigest()

    def test_missing_input(self, tmp_path):
        project = write_project(tmp_path)
        (project / "deps.lock").unlink()

        result = invoke("cache-key", "build", "--project-dir", str(project))

        assert result.exit_code == 3

    def test_unknown_job(self, tmp_path):
        project = write_project(tmp_path)

        result = invoke("cache-key", "nope", "--project-dir", str(project))

        assert result.exit_code == 1
