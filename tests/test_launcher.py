from __future__ import annotations

import hashlib
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import launch_app  # noqa: E402


def test_serve_command_points_uvicorn_at_the_app_dir():
    command = launch_app.serve_command(Path("/opt/py"), "127.0.0.1", 8080, reload=False)

    assert command[:4] == [str(Path("/opt/py")), "-m", "uvicorn", "api:app"]
    assert command[command.index("--app-dir") + 1] == str(ROOT_DIR / "app")
    assert command[-4:] == ["--host", "127.0.0.1", "--port", "8080"]


def test_reload_flag_is_forwarded():
    command = launch_app.serve_command(Path("/opt/py"), "0.0.0.0", 3000, reload=True)

    assert command[-1] == "--reload"


def test_environment_is_reused_when_requirements_are_unchanged(monkeypatch, tmp_path):
    env_dir = tmp_path / ".venv"
    python = env_dir / "bin" / "python"
    python.parent.mkdir(parents=True)
    python.write_text("")
    requirements = tmp_path / "requirements.txt"
    requirements.write_text("fastapi\n")
    stamp = env_dir / ".requirements.sha256"
    stamp.write_text(hashlib.sha256(b"fastapi\n").hexdigest())
    calls = []
    monkeypatch.setattr(launch_app, "ENV_DIR", env_dir)
    monkeypatch.setattr(launch_app, "REQUIREMENTS", requirements)
    monkeypatch.setattr(launch_app, "STAMP", stamp)
    monkeypatch.setattr(launch_app, "env_python", lambda: python)
    monkeypatch.setattr(launch_app.subprocess, "check_call", lambda *args, **kwargs: calls.append(args))

    assert launch_app.prepare_environment() == python
    assert calls == []
