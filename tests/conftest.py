"""Shared fixtures for stageci tests."""

import threading
from pathlib import Path

import pytest

from stageci.provision import CommandResult
from stageci.ui.console import Console, set_console


RUST_PIPELINE = """\
image: "rust:latest"

.cache:
  variables:
    CARGO_HOME: "${CI_PROJECT_DIR}/cargo_cache"
  before_script:
    - mkdir -p cargo_cache
    - echo $CARGO_HOME
    - apt-get update -qq && apt-get install -y -qq --no-install-recommends build-essential m4 llvm libclang-dev clang
    - git clone --depth=1 https://example.com/deps/naom.git ../naom
  cache:
    when: 'on_success'
    key:
      files:
        - Cargo.lock
    paths:
      - cargo_cache
      - target/

stages:
  - test
  - lint

test:cargo:
  extends: '.cache'
  stage: test
  only:
    - merge_requests
  cache:
    key:
      prefix: test
  script:
    - rustc --version && cargo --version
    - cargo test --lib --workspace --verbose

lint:rustfmt:
  stage: lint
  only:
    - merge_requests
  script:
    - rustup component add rustfmt
    - cargo fmt -- --check

lint:clippy:
  extends: '.cache'
  stage: lint
  only:
    - merge_requests
  cache:
    key:
      prefix: clippy
  script:
    - rustup component add clippy
    - cargo clippy --all-targets -- -D warnings
"""


class FakeRunner:
    """
    CommandRunner double: records every command and returns the exit code
    configured in `exit_codes` (default 0). Thread safe.
    """

    def __init__(self, exit_codes=None, on_run=None):
        self.exit_codes = dict(exit_codes or {})
        self.on_run = on_run
        self.calls = []
        self._lock = threading.Lock()

    def run(self, command, env, cwd):
        with self._lock:
            self.calls.append((command, dict(env), Path(cwd)))
        if self.on_run is not None:
            self.on_run(command, env, cwd)
        code = self.exit_codes.get(command, 0)
        return CommandResult(command=command, exit_code=code, stderr="boom" if code else "")

    @property
    def commands(self):
        with self._lock:
            return [c for c, _, _ in self.calls]

    def env_for(self, command):
        for c, env, _ in self.calls:
            if c == command:
                return env
        raise KeyError(command)


@pytest.fixture(autouse=True)
def quiet_console():
    """Fresh console per test so debug flags never leak between tests."""
    set_console(Console(debug=False))
    yield


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def rust_yaml() -> str:
    return RUST_PIPELINE


@pytest.fixture
def project(tmp_path) -> Path:
    """A project directory holding the files the Rust pipeline hashes."""
    root = tmp_path / "project"
    root.mkdir()
    (root / "Cargo.lock").write_text("[[package]]\nname = \"serde\"\nversion = \"1.0.0\"\n")
    (root / ".gitlab-ci.yml").write_text(RUST_PIPELINE)
    return root
