# backend/wsgi.py
from mealpass import create_app

app = create_app()
