# faucet_bot/__main__.py
"""Run the faucet bot: ``python -m faucet_bot``."""
import uvicorn

from faucet_bot.config import settings


def main() -> None:
    uvicorn.run(
        "faucet_bot.transport.http_app:app",
        host=settings.http_host,
        port=settings.http_port,
        log_level=settings.log_level.lower(),
        # The quota ledger lives in process memory: exactly one worker
        workers=1,
    )


if __name__ == "__main__":
    main()
