"""
Bitácora Digital — Logbook Workflow Service
SQLAlchemy database instance shared by all models.

Models:
    - auth:          User, Role / Entity normalisation
    - logbook:       LogEntry, EntrySignatory, ReviewTask, SignatureTask, Signature (legacy)
    - audit:         AuditLog + write_audit()
    - notification:  Notification
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
