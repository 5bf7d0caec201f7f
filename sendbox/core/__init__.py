# sendbox/core/__init__.py
"""
Доменный слой: вес объявлений, цены, допуск к операциям,
жизненный цикл бронирования и сверка платёжных событий.
"""
