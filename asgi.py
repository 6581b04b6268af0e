"""
asgi.py -- Application assembly for gatekeeper.

The only module that builds the app from the environment. Tests never import
it; they call api.main.create_app(Settings(...)) directly.

Run with:  uvicorn asgi:app
"""

from api.main import create_app
from core.config import get_settings

app = create_app(get_settings())
