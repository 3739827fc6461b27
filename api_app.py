"""FastAPI entrypoint for uvicorn.

Run: `uvicorn api_app:app --reload`
Supports both `/` and `/api` paths for local parity with Vercel.
"""

from fastapi import FastAPI

from tale_forge.backend.app import create_app

core_app = create_app()

app = FastAPI()
app.mount("/api", core_app)
app.mount("/", core_app)
