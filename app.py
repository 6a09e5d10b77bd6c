from api.routes import create_app
import logging
import os

app = create_app()
logger = logging.getLogger(__name__)

if __name__ == "__main__":
    # Log startup
    port = int(os.environ.get('PORT', 8000))
    logger.info(f"Starting Flask server on port {port}...")
    app.run(debug=os.environ.get('FLASK_DEBUG') == '1', port=port)
