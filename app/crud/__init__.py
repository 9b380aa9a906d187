# app/crud/__init__.py

from .ticket_crud import ticket_crud
