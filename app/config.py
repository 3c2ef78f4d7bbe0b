import os
from dataclasses import dataclass, field
from typing import List
from dotenv import load_dotenv

load_dotenv()

@dataclass
class Settings:
    DISPATCH_WEBHOOK_URL: str
    CORS_ORIGINS: List[str]
    OPENAI_API_KEY: str | None = None
    MODEL_NAME: str = "gpt-4o"
    DELEGATE_TEMPERATURE: float = 0.1
    DELEGATE_TIMEOUT_S: float = 20.0
    BYPASS_THRESHOLD: float = 0.95
    MIN_DISPATCH_CONFIDENCE: float = 0.5
    MAX_CHAIN_DEPTH: int = 10
    RESPONSE_WINDOW_S: float = 300.0
    DISPATCH_TIMEOUT_S: float = 120.0
    HISTORY_LIMIT: int = 50
    LOG_LEVEL: str = "INFO"
    DB_URI: str | None = None
    # Catalog path conventions used to recognise preset selections inside artifact URLs.
    SUBJECT_PRESET_PREFIXES: List[str] = field(default_factory=lambda: ["/designs/"])
    STYLE_PRESET_PREFIXES: List[str] = field(default_factory=lambda: ["/defaults/"])
    PALETTE_PRESET_PREFIXES: List[str] = field(default_factory=lambda: ["/inputs/placeholders/colors/"])

def _required(name: str) -> str:
    v = os.getenv(name)
    if not v:
        raise ValueError(f"{name} required")
    return v

def _csv(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [part.strip() for part in raw.split(",") if part.strip()]

def _load_settings() -> Settings:
    cors_origins = _csv("CORS_ORIGINS", "http://localhost:3000")
    if "*" in cors_origins:
        raise ValueError("CORS_ORIGINS must not contain '*'")

    return Settings(
        DISPATCH_WEBHOOK_URL=_required("DISPATCH_WEBHOOK_URL"),
        CORS_ORIGINS=cors_origins,
        OPENAI_API_KEY=os.getenv("OPENAI_API_KEY") or None,
        MODEL_NAME=os.getenv("MODEL_NAME", "gpt-4o"),
        DELEGATE_TEMPERATURE=float(os.getenv("DELEGATE_TEMPERATURE", "0.1")),
        DELEGATE_TIMEOUT_S=float(os.getenv("DELEGATE_TIMEOUT_S", "20")),
        BYPASS_THRESHOLD=float(os.getenv("BYPASS_THRESHOLD", "0.95")),
        MIN_DISPATCH_CONFIDENCE=float(os.getenv("MIN_DISPATCH_CONFIDENCE", "0.5")),
        MAX_CHAIN_DEPTH=int(os.getenv("MAX_CHAIN_DEPTH", "10")),
        RESPONSE_WINDOW_S=float(os.getenv("RESPONSE_WINDOW_S", "300")),
        DISPATCH_TIMEOUT_S=float(os.getenv("DISPATCH_TIMEOUT_S", "120")),
        HISTORY_LIMIT=int(os.getenv("HISTORY_LIMIT", "50")),
        LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO").upper(),
        DB_URI=os.getenv("DB_URI") or None,
        SUBJECT_PRESET_PREFIXES=_csv("SUBJECT_PRESET_PREFIXES", "/designs/"),
        STYLE_PRESET_PREFIXES=_csv("STYLE_PRESET_PREFIXES", "/defaults/"),
        PALETTE_PRESET_PREFIXES=_csv("PALETTE_PRESET_PREFIXES", "/inputs/placeholders/colors/"),
    )

settings = _load_settings()
