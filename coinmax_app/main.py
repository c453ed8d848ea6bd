import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from coinmax_app.api.routes import router as api_router
from coinmax_app.utils.json_safety import SafeJSONResponse

# ── Server ──
HOST = "127.0.0.1"
PORT = 8000
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def create_app() -> FastAPI:
    app = FastAPI(
        title="CoinMax Economy Projection",
        default_response_class=SafeJSONResponse,
    )

    # ── CORS (kept for local dev convenience) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[f"http://{HOST}:{PORT}", f"http://localhost:{PORT}"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── API routes ──
    app.include_router(api_router, prefix="/api")

    return app


app = create_app()


def run():
    import uvicorn

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    uvicorn.run(app, host=HOST, port=PORT)
