# app/models/__init__.py
# Import all models so Base.metadata knows every table

from app.db.base_class import Base
from app.models.ticket import Ticket
