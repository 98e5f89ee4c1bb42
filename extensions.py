from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

# ============================================
# 擴展實例 (在 create_app 裡才 init_app)
# ============================================
#
# 放在獨立模組,讓 blueprint 可以用 @limiter.limit 又不會循環 import app.py

cors = CORS()

limiter = Limiter(
    key_func=get_remote_address,
    strategy='fixed-window'
)
