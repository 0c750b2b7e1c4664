# backend/wsgi.py
from goldpos import create_app

app = create_app()
