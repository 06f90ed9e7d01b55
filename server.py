import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from enrollbot.backend import Backend
from enrollbot.db_connection import DbConnection
from enrollbot.replies import reply_to_payload

logger = logging.getLogger("enrollbot")

_backend: Backend | None = None


def get_backend() -> Backend:
    global _backend
    if _backend is None:
        db = DbConnection()
        db.create_schema()
        _backend = Backend(session_factory=db.build_db_session_factory())
    return _backend


def set_backend(backend: Backend | None) -> None:
    global _backend
    _backend = backend


@asynccontextmanager
async def lifespan(app: FastAPI):
    get_backend()
    yield


app = FastAPI(lifespan=lifespan)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins for dev
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class Turn(BaseModel):
    identity: str = Field(min_length=1)
    text: str


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/turn")
def send_turn(turn: Turn):
    # sync endpoint: FastAPI runs it in the threadpool, so turns run concurrently
    try:
        reply = get_backend().handle_turn(turn.identity, turn.text)
    except Exception as e:
        logger.exception("turn failed for %s", turn.identity)
        raise HTTPException(status_code=500, detail=str(e))
    return reply_to_payload(reply)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
