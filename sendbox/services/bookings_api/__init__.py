# sendbox/services/bookings_api/__init__.py
"""
HTTP-сервис бронирований (FastAPI).
"""
