# ========================================================
# base.py
# ========================================================
# ===================================================
# Declarative Base for SQLAlchemy.
# Imported by models.py and db.py
# ===================================================

from sqlalchemy.orm import declarative_base

Base = declarative_base()
