"""
ASGI entry point of the report API.

    uvicorn rollup_engine.main:app
"""

from rollup_engine.serving.api.main import create_app

app = create_app()
