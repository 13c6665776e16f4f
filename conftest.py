from pathlib import Path
import os
import sys


def _ensure_repo_root_on_path() -> None:
    repo_root = str(Path(__file__).resolve().parent)
    if repo_root not in sys.path:
        sys.path.insert(0, repo_root)


def _isolate_environment() -> None:
    # Tests build their own redirect tables and always run on in-process backends
    for key in list(os.environ):
        if key.startswith("NOTIFICATION_REDIRECT_"):
            del os.environ[key]
    os.environ["EVENT_BUS_BACKEND"] = "memory"
    os.environ["STORE_BACKEND"] = "memory"
    os.environ.pop("DELIVERY_PROVIDER_URL", None)


_ensure_repo_root_on_path()
_isolate_environment()
