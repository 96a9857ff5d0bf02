import os

import uvicorn

from subkeeper.core.logging import LOGGING_CONFIG

DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# NOTE: WORKERS must stay at 1. The task scheduler keeps its registry of
# running executions in process memory; a second uvicorn worker would run a
# second scheduler against the same database and could execute a task twice.

if __name__ == "__main__":
    uvicorn.run(
        "subkeeper:create_app",
        factory=True,
        host="0.0.0.0",
        port=int(os.getenv("PORT", "5000")),
        reload=DEBUG,
        workers=1,
        timeout_keep_alive=120,
        access_log=True,
        log_config=LOGGING_CONFIG,
    )
