# backend/wsgi.py
from tubeshop import create_app

app = create_app()
