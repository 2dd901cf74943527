from sqlalchemy import Column, Integer, String, Boolean, Float, DateTime, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from datetime import datetime
from typing import Any, Dict, Optional
from models.base import Base


class ScraperSource(Base):
    """
    Static descriptor of an upstream system.

    ``endpoint_pattern`` contains an ``{id}`` placeholder filled in by
    ``build_url``. ``settings`` holds per-source overrides such as
    ``freshness_window_seconds``, ``max_runtime_seconds``,
    ``rate_limit_delay`` and ``batch_size``.
    """
    __tablename__ = "scraper_sources"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(100), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    base_url = Column(String(2048), nullable=False)
    endpoint_pattern = Column(String(500), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)

    rate_limit = Column(Float, default=10)  # requests per second
    timeout = Column(Integer, default=30)
    retry_attempts = Column(Integer, default=3)
    headers = Column(JSONB, nullable=True)
    field_mapping = Column(JSONB, nullable=True)
    settings = Column(JSONB, nullable=True)
    version = Column(String(50), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    jobs = relationship("ScrapeJob", back_populates="source")

    def build_url(self, item_id: Any) -> str:
        base = (self.base_url or "").rstrip("/")
        endpoint = (self.endpoint_pattern or "").replace("{id}", str(item_id))
        return f"{base}/{endpoint.lstrip('/')}"

    def setting(self, key: str, default: Optional[Any] = None) -> Any:
        return (self.settings or {}).get(key, default)

    def request_headers(self) -> Dict[str, str]:
        return dict(self.headers or {})

    def __repr__(self) -> str:
        return f"<ScraperSource {self.code}>"
