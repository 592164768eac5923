#!/usr/bin/env python3
"""Cross-platform install script for support-widget.

Usage:
    python install.py          # Install, create data dir and config files, init schema
    python install.py --test   # Also install the test tools
"""

import os
import platform
import shutil
import subprocess
import sys

MIN_PYTHON = (3, 11)


def main() -> None:
    if sys.version_info < MIN_PYTHON:
        sys.exit(
            f"Error: Python {MIN_PYTHON[0]}.{MIN_PYTHON[1]}+ is required. "
            f"You have {sys.version_info.major}.{sys.version_info.minor}."
        )

    with_tests = "--test" in sys.argv
    project_dir = os.path.dirname(os.path.abspath(__file__))
    venv_dir = os.path.join(project_dir, ".venv")
    is_windows = platform.system() == "Windows"

    bin_dir = "Scripts" if is_windows else "bin"
    pip = os.path.join(venv_dir, bin_dir, "pip")
    widget_exe = os.path.join(venv_dir, bin_dir, "support-widget")

    if not os.path.isdir(venv_dir):
        print("Creating virtual environment...")
        subprocess.check_call([sys.executable, "-m", "venv", venv_dir])

    target = ".[test]" if with_tests else "."
    print(f"Installing support-widget ({target})...")
    subprocess.check_call([pip, "install", "-e", target], cwd=project_dir)

    os.makedirs(os.path.join(project_dir, "data"), exist_ok=True)

    for src, dst in [("config.example.yaml", "config.yaml"), (".env.example", ".env")]:
        src_path = os.path.join(project_dir, src)
        dst_path = os.path.join(project_dir, dst)
        if not os.path.exists(dst_path) and os.path.exists(src_path):
            shutil.copy(src_path, dst_path)
            print(f"Created {dst} from {src}")

    print("Creating schema and seeding the provider catalog...")
    subprocess.check_call([widget_exe, "init"], cwd=project_dir)

    activate_cmd = r".\.venv\Scripts\activate" if is_windows else "source .venv/bin/activate"
    print()
    print("support-widget installed. Next steps:")
    print(f"  1. {activate_cmd}")
    print("  2. support-widget add-staff --role support --email agent@example.com --password ... --name Ana")
    print("  3. support-widget add-staff --role admin --email admin@example.com --password ...")
    print("  4. support-widget conversations --status open")
    print()


if __name__ == "__main__":
    main()
