# backend/wsgi.py
from chariot import create_app

app = create_app()
