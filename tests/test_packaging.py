# tests/test_packaging.py
import re
import pathlib

ROOT = pathlib.Path(__file__).resolve().parent.parent

def test_readme_is_the_package_long_description():
    pyproject = (ROOT / "pyproject.toml").read_text(encoding="utf-8")
    match = re.search(r'^readme\s*=\s*"([^"]+)"', pyproject, re.MULTILINE)
    assert match is not None
    assert match.group(1) == "README.md"
    assert (ROOT / match.group(1)).is_file()
