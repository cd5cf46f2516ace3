import json
import os
import subprocess
import sys
from pathlib import Path

import tablitz


def test_self_check_writes_file(tmp_path: Path):
    log_dir = tmp_path / "logs"
    script = Path(tablitz.__file__).resolve()
    env = dict(os.environ, TABLITZ_HOME=str(tmp_path / "home"))

    cmd = [sys.executable, str(script), "--log-dir", str(log_dir), "--self-check"]
    p = subprocess.run(cmd, capture_output=True, text=True, env=env)

    assert p.returncode == 0, p.stderr
    sc = log_dir / "self_check.json"
    assert sc.exists()
    data = json.loads(sc.read_text(encoding="utf-8"))
    assert "python_version" in data
    assert "ccl_chromium_reader_module_path" in data
    assert data["default_data_dir"] == str(tmp_path / "home")
