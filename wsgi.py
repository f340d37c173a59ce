from pricebook import create_app as pricebook_create_app


def create_app():
    """Gunicorn entry point to create the Flask application."""
    return pricebook_create_app()
