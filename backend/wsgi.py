# backend/wsgi.py
from tenantgate import create_app

app = create_app()
