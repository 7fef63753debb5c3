# wafplane/models/ingest_cursor.py
from __future__ import annotations

from sqlalchemy import BigInteger, Column, DateTime, String

from wafplane.db import Base


class IngestCursor(Base):
    """
    Posicion de lectura por log vigilado:
      - log_path: llave
      - inode / byte_offset: se resetea a 0 si cambia el inode o el archivo se trunca
    """
    __tablename__ = "waf_ingest_cursors"

    log_path = Column(String(512), primary_key=True)
    inode = Column(BigInteger, nullable=False, default=0)
    byte_offset = Column(BigInteger, nullable=False, default=0)
    modified_at = Column(DateTime(timezone=True), nullable=True)
