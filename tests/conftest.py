from pathlib import Path

import pytest


@pytest.fixture
def write_csv(tmp_path: Path):
    """Write rows (or raw text) to a CSV file under tmp_path and return its path."""

    def _write(rows, name: str = "scan.csv") -> Path:
        path = tmp_path / name
        if isinstance(rows, str):
            path.write_text(rows, encoding="utf-8")
        else:
            path.write_text(
                "\n".join(",".join(str(v) for v in row) for row in rows) + "\n",
                encoding="utf-8",
            )
        return path

    return _write
