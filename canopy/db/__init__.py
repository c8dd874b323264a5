"""Canopy DB — declarative base, tables, session and transaction scopes."""
