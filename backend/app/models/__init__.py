# Import all models here so SQLAlchemy Base sees them for create_all / Alembic
from app.models.research import ResearchSessionRow

__all__ = [
    "ResearchSessionRow",
]
