# sendbox/core/payments/__init__.py
"""
Платежи: шлюз провайдера, сверка событий и выплаты путешественникам.
"""
