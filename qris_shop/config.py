import os
from dataclasses import dataclass, field


def _admin_ids() -> set[int]:
    admin_raw = os.getenv("ADMIN_IDS", "")
    return {int(x.strip()) for x in admin_raw.split(",") if x.strip()}


@dataclass
class Settings:
    bot_token: str = os.getenv("BOT_TOKEN", "")
    admin_ids: set[int] = field(default_factory=_admin_ids)
    qris_code: str = os.getenv("QRIS_CODE", "")
    qris_mode: str = os.getenv("QRIS_MODE", "local")
    qris_api_url: str = os.getenv("QRIS_API_URL", "https://qris-statis-to-dinamis.vercel.app/generate-qris")
    qris_timeout: float = float(os.getenv("QRIS_TIMEOUT", "15"))
    payment_ttl: float = float(os.getenv("PAYMENT_TTL", "900"))
    sweep_interval: float = float(os.getenv("SWEEP_INTERVAL", "30"))
    flush_interval: float = float(os.getenv("FLUSH_INTERVAL", "60"))
    retention: float = float(os.getenv("RETENTION", "3600"))
    min_deposit: int = int(os.getenv("MIN_DEPOSIT", "1000"))
    code_min: int = int(os.getenv("CODE_MIN", "100"))
    code_max: int = int(os.getenv("CODE_MAX", "999"))
    code_attempts: int = int(os.getenv("CODE_ATTEMPTS", "20"))
    db_path: str = os.getenv("DB_PATH", "/app/data/shop.db")
    webhook_secret: str = os.getenv("WEBHOOK_SECRET", "")
    app_host: str = os.getenv("APP_HOST", "0.0.0.0")
    app_port: int = int(os.getenv("APP_PORT", "3000"))

    def __post_init__(self):
        if self.code_min < 1 or self.code_max < self.code_min:
            raise ValueError(f"invalid unique code range {self.code_min}..{self.code_max}")
        if self.qris_mode not in ("local", "api"):
            raise ValueError(f"QRIS_MODE must be 'local' or 'api', got {self.qris_mode!r}")
