import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from qwiksale_auth.config import settings
from qwiksale_auth.database import init_db
from qwiksale_auth.routers import account, auth, health
from qwiksale_auth.services.users import user_store

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
LOGGER = logging.getLogger(__name__)

app = FastAPI(title="QwikSale Auth")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, prefix="/api")
app.include_router(auth.router, prefix="/api")
app.include_router(account.router, prefix="/api")
app.include_router(auth.router)  # Compatibility for clients calling /auth/* without /api.


@app.on_event("startup")
def startup() -> None:
    init_db()
    if settings.seed_email:
        try:
            user_store.ensure_user(email=settings.seed_email)
        except ValueError:
            LOGGER.warning("SEED_EMAIL is not a valid address; skipping seed user")


@app.get("/")
def root():
    return {"status": "QwikSale auth running"}
