from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB

# JSONB en Postgres, JSON generico en SQLite (tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")
