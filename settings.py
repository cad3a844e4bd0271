# settings.py
"""
Environment-backed configuration for the WhatsGPT service.

All credentials and tunables are read here; nothing else in the project
touches os.environ directly.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, Optional

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class FirebaseConfig:
    api_key: Optional[str] = None
    auth_domain: Optional[str] = None
    database_url: Optional[str] = None
    project_id: Optional[str] = None
    storage_bucket: Optional[str] = None
    messaging_sender_id: Optional[str] = None
    app_id: Optional[str] = None
    # database secret or ID token passed as ?auth= on REST calls
    auth: Optional[str] = None

    def public_view(self) -> Dict[str, Any]:
        return {"project_id": self.project_id, "database_url": self.database_url, "auth_set": bool(self.auth)}


@dataclass(frozen=True)
class Settings:
    firebase: FirebaseConfig = field(default_factory=FirebaseConfig)
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-3.5-turbo"
    port: int = 8000
    log_level: str = "INFO"
    store_backend: str = "firebase"
    store_namespace: str = "links/test"
    dynamo_table_name: str = "transcripts"
    aws_region: str = "us-east-1"
    gateway_url: Optional[str] = None
    gateway_api_key: Optional[str] = None
    session_name: str = "bulk-sender"
    webhook_token: Optional[str] = None
    pairing_timeout_seconds: float = 60.0
    upload_dir: str = "uploads"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def load_settings() -> Settings:
    firebase = FirebaseConfig(
        api_key=os.getenv("API_KEY"),
        auth_domain=os.getenv("AUTH_DOMAIN"),
        database_url=os.getenv("DATABASE_URL"),
        project_id=os.getenv("PROJECT_ID"),
        storage_bucket=os.getenv("STORAGE_BUCKET"),
        messaging_sender_id=os.getenv("MESSAGING_SENDER_ID"),
        app_id=os.getenv("APP_ID"),
        auth=os.getenv("FIREBASE_AUTH"),
    )
    return Settings(
        firebase=firebase,
        openai_api_key=os.getenv("OPEN_AI_KEY"),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-3.5-turbo"),
        port=int(os.getenv("PORT", "8000")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        store_backend=os.getenv("STORE_BACKEND", "firebase").strip().lower(),
        store_namespace=os.getenv("STORE_NAMESPACE", "links/test").strip("/"),
        dynamo_table_name=os.getenv("DYNAMO_TABLE_NAME", "transcripts"),
        aws_region=os.getenv("AWS_REGION", "us-east-1"),
        gateway_url=os.getenv("WHATSAPP_GATEWAY_URL"),
        gateway_api_key=os.getenv("WHATSAPP_GATEWAY_API_KEY"),
        session_name=os.getenv("WHATSAPP_SESSION", "bulk-sender"),
        webhook_token=os.getenv("GATEWAY_WEBHOOK_TOKEN"),
        pairing_timeout_seconds=_env_float("PAIRING_TIMEOUT_SECONDS", 60.0),
        upload_dir=os.getenv("UPLOAD_DIR", "uploads"),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
