"""WSGI entry point: gunicorn -c docker/gunicorn_conf.py dumpkeeper.wsgi:app"""
from dumpkeeper import create_app

app = create_app()
