import os
import socket
from typing import List, Optional


def _truthy(raw: str) -> bool:
    return str(raw or "").strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def _env_float(self, name: str, default: float) -> float:
        raw = (os.getenv(name) or "").strip()
        if not raw:
            return default
        try:
            return float(raw)
        except Exception:
            return default

    def __init__(self) -> None:
        self.env = os.getenv("APP_ENV", "local")
        self.db_path = os.getenv("POS_SYNC_DB_PATH", "").strip() or os.path.join(os.getcwd(), "pos_sync.sqlite")
        self.cloud_base_url = (os.getenv("POS_CLOUD_API_URL") or "http://localhost:8787").strip().rstrip("/")
        self.cloud_token = (os.getenv("POS_CLOUD_TOKEN") or "").strip()
        self.tenant_id = (os.getenv("POS_TENANT_ID") or "").strip()
        self.device_id = (os.getenv("POS_DEVICE_ID") or "").strip() or socket.gethostname()
        # The orchestrators never enforce their own timeout; this is the network client's default.
        self.http_timeout = self._env_float("POS_HTTP_TIMEOUT", 10.0)
        self.peer_urls = self._split_csv(os.getenv("POS_PEER_URLS", "").strip(), default=[])
        self.lan_sync_key = (os.getenv("POS_LAN_SYNC_KEY") or "").strip()
        # Explicit override; when unset, authority follows the settings deviceRole.
        raw_authority = (os.getenv("POS_SYNC_AUTHORITATIVE") or "").strip()
        self.sync_authoritative: Optional[bool] = _truthy(raw_authority) if raw_authority else None
        self.allow_insecure_pin_hash = _truthy(os.getenv("POS_ALLOW_INSECURE_PIN_HASH", ""))
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

    @property
    def is_production(self) -> bool:
        return self.env.strip().lower() in {"prod", "production"}


settings = Settings()
