import logging
import os

from pos_server import create_app
from sync_engine import SyncEngine
from sync_settings import configure_logging, load_settings


if __name__ == '__main__':
    settings = load_settings()
    configure_logging(settings.log_level)
    debug = os.getenv('FLASK_DEBUG', '0') == '1'
    port = int(os.getenv('PORT', '5000'))
    host = os.getenv('HOST', '0.0.0.0')
    engine = SyncEngine(settings)
    app = create_app(engine)
    # The reloader runs the module twice; only the serving child drives sync
    if not debug or os.environ.get('WERKZEUG_RUN_MAIN') == 'true':
        engine.start()
    else:
        logging.getLogger(__name__).info("Sync driver deferred to the reloader child")
    try:
        app.run(host=host, port=port, debug=debug)
    finally:
        engine.stop()
