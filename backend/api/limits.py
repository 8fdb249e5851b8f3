"""
Rate limit по IP (slowapi). Один экземпляр на все роутеры; app.state.limiter ставится в api/main.py.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)
