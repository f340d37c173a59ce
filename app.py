from loguru import logger

from pricebook import create_app

app = create_app()


if __name__ == '__main__':
    logger.info("Starting pricebook Flask application.")
    app.run(debug=app.config.get("DEBUG", False), port=5000)
