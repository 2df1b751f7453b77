"""Lending Desk - Services Package

Best-effort side-effect sinks used by the Library facade:
- Audit log sink (audit.py)
- Notification sink with optional webhook delivery (notifications.py)
"""
