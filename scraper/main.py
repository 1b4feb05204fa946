"""
ASGI entry point: `uvicorn scraper.main:app`
"""
from scraper.core.app_factory import create_app

app = create_app()
