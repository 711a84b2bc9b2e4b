import sys
from pathlib import Path


# Ensure tests can import project packages and the scripted tool doubles
# regardless of how pytest is invoked.
TESTS_DIR = Path(__file__).resolve().parent
ROOT = TESTS_DIR.parent
for path in (str(ROOT), str(TESTS_DIR)):
    if path not in sys.path:
        sys.path.insert(0, path)
