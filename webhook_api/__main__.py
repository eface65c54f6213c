import logging
import os

import uvicorn

from .logging_utils import log_json
from .main import app


def main() -> None:
    port = int(os.getenv("PORT", "8000"))
    log_json(logging.INFO, event="server_starting", port=port)
    uvicorn.run(app, host="0.0.0.0", port=port, log_config=None)


if __name__ == "__main__":
    main()
