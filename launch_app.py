from __future__ import annotations

import argparse
import hashlib
import os
import subprocess
import sys
import venv
from pathlib import Path
from typing import List

ROOT = Path(__file__).resolve().parent
APP_DIR = ROOT / "app"
ENV_DIR = ROOT / ".venv"
REQUIREMENTS = APP_DIR / "requirements.txt"
STAMP = ENV_DIR / ".requirements.sha256"


def env_python() -> Path:
    scripts = "Scripts" if os.name == "nt" else "bin"
    name = "python.exe" if os.name == "nt" else "python"
    return ENV_DIR / scripts / name


def prepare_environment() -> Path:
    """Create ``.venv`` and install requirements when their hash changed."""
    python = env_python()
    if not python.exists():
        print(f"[launcher] creating {ENV_DIR}")
        venv.create(ENV_DIR, with_pip=True)
    digest = hashlib.sha256(REQUIREMENTS.read_bytes()).hexdigest()
    if STAMP.exists() and STAMP.read_text().strip() == digest:
        return python
    print(f"[launcher] installing {REQUIREMENTS.name}")
    subprocess.check_call([str(python), "-m", "pip", "install", "-q", "-r", str(REQUIREMENTS)])
    STAMP.write_text(digest)
    return python


def serve_command(python: Path, host: str, port: int, reload: bool) -> List[str]:
    command = [str(python), "-m", "uvicorn", "api:app", "--app-dir", str(APP_DIR), "--host", host, "--port", str(port)]
    if reload:
        command.append("--reload")
    return command


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve the duty rotation API.")
    parser.add_argument("--host", default=os.environ.get("HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", "3000")))
    parser.add_argument("--reload", action="store_true", help="Restart on code changes.")
    parser.add_argument(
        "--system-python",
        action="store_true",
        help="Use the current interpreter instead of a managed .venv.",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    python = Path(sys.executable) if args.system_python else prepare_environment()
    print(f"[launcher] serving on {args.host}:{args.port}")
    return subprocess.call(serve_command(python, args.host, args.port, args.reload))


if __name__ == "__main__":
    try:
        sys.exit(main())
    except subprocess.CalledProcessError as exc:
        sys.exit(f"[launcher] {' '.join(exc.cmd)} exited with {exc.returncode}")
    except OSError as exc:
        sys.exit(f"[launcher] {exc}")
