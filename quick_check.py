import subprocess
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parent
PY_FILES = [
    "stormbox_app.py",
    "stormbox/paths.py",
    "stormbox/constants.py",
    "stormbox/errors.py",
    "stormbox/domain/models.py",
    "stormbox/domain/helpers.py",
    "stormbox/domain/reply.py",
    "stormbox/infra/async_client.py",
    "stormbox/infra/blob_store.py",
    "stormbox/infra/config_store.py",
    "stormbox/infra/jmap_client.py",
    "stormbox/services/mailbox_directory.py",
    "stormbox/services/mailbox_cache.py",
    "stormbox/services/delta_sync.py",
    "stormbox/services/mutations.py",
    "stormbox/services/inline_images.py",
    "stormbox/services/detail_loader.py",
    "stormbox/services/mail_session.py",
]


def run(cmd):
    print("> " + " ".join(cmd))
    result = subprocess.run(cmd, cwd=ROOT)
    if result.returncode != 0:
        raise SystemExit(result.returncode)


def main():
    run([sys.executable, "-m", "py_compile", *PY_FILES])
    run([sys.executable, "-c", "import stormbox, stormbox_app; print('imports ok')"])
    run([sys.executable, "-m", "pytest", "-q"])
    print("All automated checks passed.")


if __name__ == "__main__":
    main()
