from __future__ import annotations

import importlib.util
import sys
from pathlib import Path

PKG_NAME = "m365_link_repair"
repo_root = Path(__file__).resolve().parents[1]
tests_path = repo_root / "tests"
sys.path.insert(0, str(tests_path))

# Same aliasing as run.py when the package is not installed
if importlib.util.find_spec(PKG_NAME) is None:
    spec = importlib.util.spec_from_file_location(
        PKG_NAME,
        repo_root / "__init__.py",
        submodule_search_locations=[str(repo_root)],
    )
    module = importlib.util.module_from_spec(spec)
    sys.modules[PKG_NAME] = module
    spec.loader.exec_module(module)
