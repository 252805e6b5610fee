import os
import tempfile

# Keep the module-level engine and scheduler away from ./data during tests.
os.environ.setdefault("LEDGER_DATA_DIR", tempfile.mkdtemp(prefix="ledger-tests-"))
os.environ.setdefault("LEDGER_SCHEDULER_ENABLED", "0")
os.environ.setdefault("LEDGER_CONFLICT_BACKOFF_SECS", "0.001")
