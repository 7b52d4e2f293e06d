from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

from database import Base, SessionLocal, engine, settings
from api import accounts, rounds, websocket
from core.broadcast import BroadcastChannel
from core.round_engine import RoundEngine
from core.scheduler import RoundScheduler

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: 建立資料表，啟動回合引擎（單一實例）
    Base.metadata.create_all(bind=engine)

    round_engine = RoundEngine(
        session_factory=SessionLocal,
        channel=BroadcastChannel(),
        settings=settings,
    )
    scheduler = RoundScheduler(round_engine)
    app.state.engine = round_engine
    app.state.scheduler = scheduler
    scheduler.start()

    yield

    # Shutdown: 停止排程；open 中的回合留給下次啟動時復原
    await scheduler.stop()


app = FastAPI(
    title="Color Prediction Game API",
    description="Timed color/number/size prediction rounds with live settlement",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure this properly in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(rounds.router)
app.include_router(accounts.router)
app.include_router(websocket.router)


@app.get("/")
def root():
    return {"message": "Color Prediction Game API", "status": "ok"}


@app.get("/health")
def health():
    scheduler = getattr(app.state, "scheduler", None)
    return {
        "status": "healthy",
        "engine_running": bool(scheduler and scheduler.running),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
