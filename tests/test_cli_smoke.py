import subprocess
import sys


def test_cli_help() -> None:
    cp = subprocess.run(
        [sys.executable, "-m", "scclonecall", "--help"],
        check=True,
        capture_output=True,
        text=True,
    )
    assert "SCCloneCall" in cp.stdout or "scclonecall" in cp.stdout.lower()
