from __future__ import annotations

from taskagent.agent.registry import build_registry
from taskagent.config import load_config

from .app import create_app

_cfg = load_config()
app = create_app(build_registry(_cfg))
