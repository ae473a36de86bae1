from __future__ import annotations

import uvicorn

from taskagent.agent.registry import build_registry
from taskagent.config import load_config
from taskagent.gateway.app import create_app
from taskagent.observability import get_json_logger


def main() -> None:
    cfg = load_config()
    app = create_app(build_registry(cfg))
    get_json_logger("taskagent").info(
        "server starting",
        extra={
            "event": "server_starting",
            "attributes": {"host": cfg.host, "port": cfg.port, "state_store": cfg.state_store},
        },
    )
    # log_config=None keeps the JSON handlers installed by configure_uvicorn_logging
    uvicorn.run(app, host=cfg.host, port=cfg.port, log_config=None)


if __name__ == "__main__":
    main()
