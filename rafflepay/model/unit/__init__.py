from .orm import Base, Unit, AVAILABLE, RESERVED, PAID, STATUSES

__all__ = ["Base", "Unit", "AVAILABLE", "RESERVED", "PAID", "STATUSES"]
