"""
ASGI entry point for uvicorn.

The .env file is loaded before the app reads its configuration.
"""

from dotenv import load_dotenv

load_dotenv()

from server.app import create_app  # pylint: disable=wrong-import-position

app = create_app()
