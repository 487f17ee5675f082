"""Configuration settings for the workflow console."""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Remote job API
API_BASE = os.getenv("WORKFLOW_API_BASE", "http://127.0.0.1:8000").rstrip("/")
REQUEST_TIMEOUT = float(os.getenv("WORKFLOW_REQUEST_TIMEOUT", "30.0"))

# Local state file shared by all persisted slots
STATE_FILE = Path(os.getenv("WORKFLOW_STATE_FILE", str(Path.home() / ".workflow_console" / "state.json")))

# Log buffer bound
MAX_LOG_ENTRIES = 2000

# Poll pacing (in seconds)
POLL_BASE_INTERVAL = 1.5
POLL_INCREMENT = 1.5
POLL_MAX_INTERVAL = 10.0

# Persistence debounce (in seconds)
LOG_WRITE_DELAY = 0.25

# Delay before a finished or failed action falls back to idle (in seconds)
ACTION_STATE_RESET_DELAY = 1.6

# Persisted slot keys
SELECTED_ACTION_KEY = "workflow:selectedAction"
OPTION_SELECTIONS_KEY = "workflow:optionSelections"
JOB_SNAPSHOT_KEY = "workflow:jobSnapshot"
JOB_LOGS_KEY = "workflow:jobLogs"
JOB_CURSOR_KEY = "workflow:jobCursor"
SELECTED_OWNERS_KEY = "workflow:selectedOwners"
