"""
Run one chat node: python -m relaychat

Port and peer come from PORT and PEER_URL (see config.py).
"""

import uvicorn

from relaychat.config import get_settings


def main() -> None:
    settings = get_settings()
    # log_config=None keeps the JSON handlers installed by setup_logging
    uvicorn.run(
        "relaychat.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_config=None,
    )


if __name__ == "__main__":
    main()
