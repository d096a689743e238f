"""Raffle ticket reservations reconciled against asynchronous payments."""
