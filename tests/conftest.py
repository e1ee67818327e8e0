"""Shared fixtures: throwaway git repositories and a scripted fake agent."""

import asyncio
import json
import subprocess
import sys
from pathlib import Path

import pytest

from ralph_agent.models import Prd, SessionConfig, Story


FAKE_AGENT = Path(__file__).parent / "fake_agent.py"


def git(repo: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=repo, capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


@pytest.fixture
def git_repo(tmp_path) -> Path:
    """A git repository with one commit on its default branch."""
    repo = tmp_path / "project"
    repo.mkdir()
    git(repo, "init")
    git(repo, "config", "user.name", "Test User")
    git(repo, "config", "user.email", "test@example.com")
    git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("# Test project\n")
    git(repo, "add", "-A")
    git(repo, "commit", "-m", "Initial commit")
    return repo


class FakeAgent:
    """Handle on the fake agent's scenario and recorded invocations."""

    def __init__(self, state_dir: Path):
        self.state_dir = state_dir
        self.command = [sys.executable, str(FAKE_AGENT)]

    def script(self, *steps: dict) -> None:
        (self.state_dir / "scenario.json").write_text(json.dumps({"steps": list(steps)}))

    @property
    def calls(self) -> int:
        counter = self.state_dir / "calls"
        return int(counter.read_text()) if counter.exists() else 0

    def prompt(self, call: int) -> str:
        return (self.state_dir / f"prompt-{call}.txt").read_text()

    def args(self, call: int) -> list[str]:
        return json.loads((self.state_dir / f"args-{call}.json").read_text())


@pytest.fixture
def fake_agent(tmp_path, monkeypatch) -> FakeAgent:
    state_dir = tmp_path / "fake-agent"
    state_dir.mkdir()
    monkeypatch.setenv("RALPH_FAKE_AGENT_DIR", str(state_dir))
    agent = FakeAgent(state_dir)
    agent.script({"records": [{"type": "result", "subtype": "success", "result": "ok"}]})
    return agent


@pytest.fixture
def agent_config(fake_agent) -> SessionConfig:
    """Session config that runs the fake agent with short timeouts."""
    return SessionConfig(
        agent_command=fake_agent.command,
        iteration_timeout_seconds=30,
        termination_grace_seconds=2,
    )


@pytest.fixture
def sample_prd() -> Prd:
    return Prd(
        project="Test Project",
        branch_name="ralph/test",
        stories=[
            Story(id="US-001", title="Add greeting", priority=1,
                  acceptance_criteria=["greet() returns hello"]),
            Story(id="US-002", title="Add farewell", priority=2),
        ],
    )


def result_record(text: str = "done", **extra) -> dict:
    return {"type": "result", "subtype": "success", "result": text, **extra}


def complete_record() -> dict:
    return {
        "type": "assistant",
        "message": {"content": [{"type": "text", "text": "All done <ralph>STORY_COMPLETE</ralph>"}]},
    }


@pytest.fixture
def wait_until():
    """Poll an (a)sync predicate until it holds or the timeout expires."""
    async def _wait(predicate, timeout: float = 15.0, interval: float = 0.05):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            value = predicate()
            if asyncio.iscoroutine(value):
                value = await value
            if value:
                return value
            if loop.time() >= deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)
    return _wait
