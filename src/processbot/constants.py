"""Reserved keys, file names and notification templates."""

from __future__ import annotations

FEATURES_KEY = "features"

PROCESS_FILE_NAME = "Process.toml"

BACKLOG_DEFAULT_NAME = "backlog"

# Persistent store keys.
GITHUB_TO_MATRIX_KEY = "GITHUB_TO_MATRIX"
LOCAL_STATE_KEY = "LOCAL_STATE_KEY"

MALFORMED_PROCESS_FILE = (
    "Process.toml for repo {repo_url} is malformed or missing some fields. "
    "Please ensure that every listed project contains an owner and a matrix_room_id."
)
