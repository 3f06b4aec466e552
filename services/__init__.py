"""
Spot Trading Engine Services Module
Сервисы поверх биржи и хранилища: пары, риск, мониторинг, бэктест
"""

__version__ = "1.0.0"
