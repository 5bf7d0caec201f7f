# sendbox/core/bookings/__init__.py
"""
Бронирования: модели, репозиторий, машина состояний и сервис жизненного цикла.
"""
