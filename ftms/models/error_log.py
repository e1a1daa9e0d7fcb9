"""Error log model: persists application errors for admin monitoring."""

import enum
from datetime import datetime

from sqlalchemy import String, Text, Integer, DateTime, Enum, Float, Boolean, func
from sqlalchemy.orm import Mapped, mapped_column

from ftms.database import Base
from ftms.models.reference import utcnow


class ErrorSeverity(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorLog(Base):
    """Error captured by the middleware or by a best-effort revenue hook."""
    __tablename__ = "error_logs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    severity: Mapped[ErrorSeverity] = mapped_column(
        Enum(ErrorSeverity), default=ErrorSeverity.ERROR, nullable=False,
    )
    error_type: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    traceback: Mapped[str | None] = mapped_column(Text, nullable=True)

    module: Mapped[str | None] = mapped_column(String(300), nullable=True)
    function_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    line_number: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # HTTP context (middleware only)
    request_method: Mapped[str | None] = mapped_column(String(10), nullable=True)
    request_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    request_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_time_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)

    # Revenue the error relates to, when raised from a revenue hook
    revenue_code: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)

    resolved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False,
    )
