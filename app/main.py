from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.api.routes import router as route_router

from contextlib import asynccontextmanager
from app.db.postgres import create_db_pool

@asynccontextmanager
async def lifespan(app: FastAPI):
    # History persistence is optional; without DB_URI requests must carry their own history.
    app.state.db_pool = await create_db_pool()
    yield
    if app.state.db_pool is not None:
        await app.state.db_pool.close()

app = FastAPI(title="Intent Router", version="0.1.0", lifespan=lifespan)

from app.config import settings

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["POST", "GET", "OPTIONS"],
    allow_headers=["Content-Type"],
)

app.include_router(route_router)


@app.get("/health")
def health():
    return {"status": "ok"}
