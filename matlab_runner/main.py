from contextlib import asynccontextmanager

from fastapi import FastAPI, APIRouter  # type: ignore[import-not-found]
from fastapi.middleware.cors import CORSMiddleware  # type: ignore[import-not-found]

from .config import config
from .logging_config import setup_logging
from .routers import analysis, results


@asynccontextmanager
async def lifespan(_app: FastAPI):
    setup_logging()
    from .runtime.run_kind_profile import load_run_kind_profiles
    from .services.analysis_supervisor import analysis_supervisor

    load_run_kind_profiles()
    try:
        yield
    finally:
        await analysis_supervisor.shutdown()


app = FastAPI(
    title="MATLAB Analysis Runner",
    description="Local helper service that runs MATLAB reliability analyses and streams their progress.",
    version="0.3.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(config.SERVER.CORS_ORIGINS),
    allow_methods=["*"],
    allow_headers=["*"],
)

api_router = APIRouter(prefix="/api")
api_router.include_router(analysis.router)
api_router.include_router(results.router)
app.include_router(api_router)


@app.get("/")
async def root():
    return {"message": "MATLAB Analysis Runner is running. Start analyses via /api/matlab/execute-stream."}
