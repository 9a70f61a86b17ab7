"""
Launcher for the M365 Link Repair Engine.

The project folder name usually contains hyphens, which prevents
`python -m <folder>` from resolving the package's relative imports. This
script registers the current directory under the alias `m365_link_repair`
(unless the package is already installed) and then runs __main__.py.

Usage (run from inside the project directory):
    python run.py D:\\Finance --dry-run
    python run.py D:\\Finance --candidates E:\\Archive
    python run.py --config config.json

Worker processes are spawned fresh and import `m365_link_repair` by name,
so process mode needs the package installed (`pip install -e .`); without
it, run with `--mode thread`.
"""
import importlib
import importlib.util
import sys
from pathlib import Path

# Unicode banners on the legacy Windows console. Must happen before any print().
if sys.platform == "win32":
    try:
        import ctypes
        ctypes.windll.kernel32.SetConsoleOutputCP(65001)
        ctypes.windll.kernel32.SetConsoleCP(65001)
    except (AttributeError, OSError):
        pass
    for stream in (sys.stdout, sys.stderr):
        if hasattr(stream, "reconfigure"):
            stream.reconfigure(encoding="utf-8", errors="replace")  # type: ignore[union-attr]

PKG_NAME = "m365_link_repair"
pkg_dir = Path(__file__).resolve().parent


def _register_alias():
    """Import this directory as the m365_link_repair package."""
    spec = importlib.util.spec_from_file_location(
        PKG_NAME,
        pkg_dir / "__init__.py",
        submodule_search_locations=[str(pkg_dir)],
    )
    assert spec is not None and spec.loader is not None, "Failed to create spec for package"
    module = importlib.util.module_from_spec(spec)
    sys.modules[PKG_NAME] = module
    spec.loader.exec_module(module)


if importlib.util.find_spec(PKG_NAME) is None:
    _register_alias()

# __main__.py guards its entry point with `if __name__ == "__main__"`, which
# never fires on import. Call main() explicitly.
importlib.import_module(f"{PKG_NAME}.__main__").main()
