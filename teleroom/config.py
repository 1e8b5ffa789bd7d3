import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from dotenv import load_dotenv


# Load .env once at import time (support running from any cwd)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")


def _split_csv(value: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    # Server
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "5000"))
    ALLOWED_ORIGINS: tuple[str, ...] = field(
        default_factory=lambda: _split_csv(os.getenv("ALLOWED_ORIGINS", "*"))
    )

    # TLS material handed to uvicorn (browsers only grant camera access on https)
    SSL_CERTFILE: str | None = os.getenv("SSL_CERTFILE")
    SSL_KEYFILE: str | None = os.getenv("SSL_KEYFILE")

    # STUN/TURN
    STUN_SERVER: str | None = os.getenv("STUN_SERVER")
    TURN_URL: str | None = os.getenv("TURN_URL")
    TURN_USERNAME: str | None = os.getenv("TURN_USERNAME")
    TURN_PASSWORD: str | None = os.getenv("TURN_PASSWORD")

    # Client
    SIGNALING_URL: str = os.getenv("SIGNALING_URL", "ws://localhost:5000/ws")
    NEGOTIATION_TIMEOUT: float = float(os.getenv("NEGOTIATION_TIMEOUT", "0"))


DEFAULT_STUN_SERVERS = (
    "stun:stun.l.google.com:19302",
    "stun:global.stun.twilio.com:3478",
)


def ice_servers(cfg: Settings) -> list[dict]:
    """ICE server list in the RTCConfiguration JSON shape.

    Environment variables (optional):
    - STUN_SERVER: extra STUN url placed ahead of the public defaults
    - TURN_URL, TURN_USERNAME, TURN_PASSWORD: used only when all three are set
    """
    servers = []
    if cfg.STUN_SERVER:
        servers.append({"urls": cfg.STUN_SERVER})
    # Always include public STUN as fallback
    servers.extend({"urls": url} for url in DEFAULT_STUN_SERVERS)

    if cfg.TURN_URL and cfg.TURN_USERNAME and cfg.TURN_PASSWORD:
        servers.append({
            "urls": cfg.TURN_URL,
            "username": cfg.TURN_USERNAME,
            "credential": cfg.TURN_PASSWORD,
        })
    return servers


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

# Convenient module-level alias
settings = get_settings()
