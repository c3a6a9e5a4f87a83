"""Application entry point for the roll-off rental API."""

import logging

from rolloff.rental.config import settings
from rolloff.webapp import create_app

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app()


if __name__ == "__main__":
    app.run(debug=True)
