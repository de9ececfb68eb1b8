import os
import tempfile

# Settings are read at import time, so the storage root must be set before any test imports the app.
os.environ.setdefault("STORAGE_ROOT", tempfile.mkdtemp(prefix="filedrop-tests-"))
os.environ.setdefault("CLEANUP_ENABLED", "false")
