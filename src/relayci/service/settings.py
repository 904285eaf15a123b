from __future__ import annotations
import os

DATABASE_URL = os.environ.get("RELAYCI_DATABASE_URL", "sqlite+aiosqlite:///.relayci/runs.db")
WORKFLOW = os.environ.get("RELAYCI_WORKFLOW")
ENGINE_CONFIG = os.environ.get("RELAYCI_CONFIG")
