"""
Shared pytest fixtures.

External commands (bulk loader, query command, hook commands) are simulated
by small Python scripts run with the current interpreter. Each script
records its invocations next to itself so tests can assert on them.
"""

import json
import sys
from pathlib import Path

import pytest

from batchloader.config import Config


FAKE_LOADER = r'''
import json
import sys
from pathlib import Path

here = Path(__file__).parent
args = sys.argv[1:]
opts = dict(zip(args[::2], args[1::2]))

with open(here / "loader_calls.jsonl", "a") as f:
    f.write(json.dumps(args) + "\n")

source = opts["--file"]
if source == "-":
    data = sys.stdin.read()
    with open(here / "loader_stdin.txt", "a") as f:
        f.write(data)
else:
    data = Path(source).read_text()

lines = [line for line in data.splitlines() if line]
rows = max(len(lines) - (1 if opts.get("--header") == "true" else 0), 0)

if "broken" in opts["--table"]:
    print("Status: ERROR")
    print(f"Rows total: {rows}")
    print("Rows successfully loaded: 0")
    print(f"Rows failed: {rows}")
    print("Rows duplicate/omitted: 0")
    print("Percentage loaded: 0.00%")
    print("loader: target table rejected the data", file=sys.stderr)
    sys.exit(1)

print("Status: SUCCESS")
print(f"Rows total: {rows}")
print(f"Rows successfully loaded: {rows}")
print("Rows failed: 0")
print("Rows duplicate/omitted: 0")
print("Percentage loaded: 100.00%")
'''

FAKE_QUERY = r'''
import sys
from pathlib import Path

statement = sys.stdin.read()
with open(Path(__file__).parent / "queries.log", "a") as f:
    f.write(statement.strip() + "\n")

if "FAIL" in statement:
    print("ERROR: statement failed")
else:
    print("Query OK")
'''

FAKE_HOOK = r'''
import sys
from pathlib import Path

with open(Path(__file__).parent / "hooks.log", "a") as f:
    f.write(" ".join(sys.argv[1:]) + "\n")

sys.exit(3 if "fail" in sys.argv[1:] else 0)
'''


class Workspace:
    """Directories and fake commands for one test run."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.source = root / "source"
        self.work = root / "work"
        self.lock = root / "lock"
        self.logs = root / "logs"
        self.bin = root / "bin"
        for path in (self.source, self.work, self.lock, self.logs, self.bin):
            path.mkdir()

        (self.bin / "loader.py").write_text(FAKE_LOADER)
        (self.bin / "query.py").write_text(FAKE_QUERY)
        (self.bin / "hook.py").write_text(FAKE_HOOK)

    def command(self, script: str) -> str:
        return f"{sys.executable} {self.bin / script}"

    def add_file(self, identifier: str, content: str = "id,name\n1,a\n2,b\n") -> Path:
        path = self.source / identifier
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        return path

    def loader_calls(self) -> list[list[str]]:
        path = self.bin / "loader_calls.jsonl"
        if not path.exists():
            return []
        return [json.loads(line) for line in path.read_text().splitlines()]

    def lines(self, name: str) -> list[str]:
        path = self.bin / name
        return path.read_text().splitlines() if path.exists() else []

    def raw_config(self, **overrides) -> dict:
        raw = {
            "database": "analytics",
            "default_schema": "public",
            "default_load_mode": "append",
            "source_profile": "local",
            "source_path": str(self.source),
            "work_dir": str(self.work),
            "lock_dir": str(self.lock),
            "log_dir": str(self.logs),
            "loader": {"command": self.command("loader.py")},
            "query": {"command": self.command("query.py"), "success_marker": "Query OK"},
            "poll": {"max_attempts": 500, "interval_seconds": 0.01},
            "notification": {"cluster_name": "test-cluster"},
        }
        raw.update(overrides)
        return raw

    def config(self, **overrides) -> Config:
        return Config.from_dict(self.raw_config(**overrides), config_path=str(self.root / "config.yaml"))


@pytest.fixture
def workspace(tmp_path) -> Workspace:
    return Workspace(tmp_path)
