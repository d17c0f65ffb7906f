"""Tests for the programmatic pipeline DSL."""

import pytest

from stageci.dsl import cache, fetch_source, install_packages, job, only, pipeline
from stageci.errors import ParseError, UndefinedReferenceError


class TestSetupHelpers:
    def test_install_packages(self):
        cmd = install_packages("build-essential", "clang")

        assert cmd == (
            "apt-get update -qq && "
            "apt-get install -y -qq --no-install-recommends build-essential clang"
        )

    def test_install_packages_needs_names(self):
        with pytest.raises(ValueError):
            install_packages()

    def test_fetch_source_is_guarded(self):
        cmd = fetch_source("https://example.com/naom.git", "../naom")

        assert cmd == "test -d ../naom/.git || git clone --depth=1 https://example.com/naom.git ../naom"

    def test_fetch_source_full_clone_on_branch(self):
        cmd = fetch_source("https://example.com/naom.git", "../naom", depth=None, ref="develop")

        assert cmd == "test -d ../naom/.git || git clone --branch develop https://example.com/naom.git ../naom"


class TestJob:
    def test_defaults(self):
        j = job("unit", "pytest -q")

        assert j.stage == "test"
        assert j.script == ("pytest -q",)
        assert j.before_script == ()
        assert j.trigger is None

    def test_requires_script(self):
        with pytest.raises(ValueError):
            job("empty")

    def test_base_acts_as_template(self):
        base = job(
            ".cache",
            "true",
            before_script=[install_packages("clang")],
            cache=cache("target", files=["Cargo.lock"]),
            variables={"CARGO_HOME": "cargo_cache"},
        )

        j = job("clippy", "cargo clippy", stage="lint", base=base, variables={"RUSTFLAGS": "-D warnings"})

        assert j.script == ("cargo clippy",)
        assert j.before_script == base.before_script
        assert j.cache == base.cache
        assert j.variables == {"CARGO_HOME": "cargo_cache", "RUSTFLAGS": "-D warnings"}

    def test_cache_policy_validated(self):
        with pytest.raises(ValueError):
            cache("target", when="sometimes")

    def test_only(self):
        assert only("merge_requests").allowed == frozenset({"merge_request"})


class TestPipeline:
    def test_stage_positions(self):
        p = pipeline(["test", "lint"], job("fmt", "cargo fmt", stage="lint"))

        assert p.stage("lint").position == 1
        assert p.jobs_by_stage()[0][1] == []

    def test_unknown_stage(self):
        with pytest.raises(UndefinedReferenceError):
            pipeline(["test"], job("fmt", "cargo fmt", stage="lint"))

    def test_duplicate_job(self):
        with pytest.raises(ParseError):
            pipeline(["test"], job("a", "x"), job("a", "y"))
