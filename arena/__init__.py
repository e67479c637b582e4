"""
Stars Arena - Tournament Registration Platform

Responsibilities:
- Ledger store for users and tournaments (atomic multi-row updates)
- Registration/settlement engine (entry fees, capacity, refunds)
- Read-through cache for tournament listings
- Post-commit notifications for connected clients
- Star balance adjustments (award/deduct)
"""
