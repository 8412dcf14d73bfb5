from fastapi import FastAPI

from .routes import router

app = FastAPI(title="Livetrack", description="Live channel watch time tracker")

app.include_router(router)
