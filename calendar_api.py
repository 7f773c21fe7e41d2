"""Flask application serving BIR pickup calendars as iCalendar feeds."""
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from flasgger import Swagger
from flask import Flask, Response, jsonify
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.utils import secure_filename

from processor.errors import InvalidArgumentError, UpstreamUnavailableError
from processor.feed_service import FeedService
from processor.ics_generator import IcsGenerator
from scraper.bir_calendar import BirCalendarScraper
from storage.event_cache import EventCache

logger = logging.getLogger(__name__)

# Attributes present on every LogRecord, anything else came in through ``extra``
_RESERVED_RECORD_ATTRS = set(
    logging.LogRecord('', logging.INFO, '', 0, '', (), None).__dict__
) | {'message', 'asctime'}


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


@dataclass
class Settings:
    """Runtime configuration read from environment variables."""
    base_url: str = BirCalendarScraper.BASE_URL
    user_agent: str = BirCalendarScraper.USER_AGENT
    timeout_seconds: int = 30
    log_level: str = 'INFO'
    calendar_timezone: str = IcsGenerator.DEFAULT_TIMEZONE
    cache_ttl_hours: float = 24
    cache_sliding_hours: float = 12
    feed_max_age_seconds: int = 3600

    @classmethod
    def from_env(cls) -> 'Settings':
        return cls(
            base_url=os.environ.get('BIR_BASE_URL', BirCalendarScraper.BASE_URL),
            user_agent=os.environ.get('USER_AGENT', BirCalendarScraper.USER_AGENT),
            timeout_seconds=int(os.environ.get('TIMEOUT_SECONDS', '30')),
            log_level=os.environ.get('LOG_LEVEL', 'INFO'),
            calendar_timezone=os.environ.get('CALENDAR_TIMEZONE', IcsGenerator.DEFAULT_TIMEZONE),
            cache_ttl_hours=float(os.environ.get('CACHE_TTL_HOURS', '24')),
            cache_sliding_hours=float(os.environ.get('CACHE_SLIDING_HOURS', '12')),
            feed_max_age_seconds=int(os.environ.get('FEED_MAX_AGE_SECONDS', '3600'))
        )


def build_feed_service(settings: Settings) -> FeedService:
    """Wire scraper, cache and generator from settings."""
    return FeedService(
        scraper=BirCalendarScraper(
            timeout=settings.timeout_seconds,
            base_url=settings.base_url,
            user_agent=settings.user_agent
        ),
        cache=EventCache(
            ttl_seconds=settings.cache_ttl_hours * 3600,
            sliding_ttl_seconds=settings.cache_sliding_hours * 3600
        ),
        generator=IcsGenerator(tz_name=settings.calendar_timezone)
    )


SWAGGER_CONFIG = {
    "headers": [],
    "specs": [
        {
            "endpoint": "apispec",
            "route": "/swagger/v1/swagger.json",
            "rule_filter": lambda rule: True,
            "model_filter": lambda tag: True,
        }
    ],
    "static_url_path": "/flasgger_static",
    "swagger_ui": True,
    "specs_route": "/swagger/"
}

SWAGGER_TEMPLATE = {
    "swagger": "2.0",
    "info": {
        "title": "BIR Calendar API",
        "description": "iCalendar feeds of BIR waste collection dates with day-before reminders.",
        "version": "1.0.0"
    },
}


def _problem(title: str, status: int):
    return jsonify({'title': title, 'status': status}), status


def create_app(
    settings: Optional[Settings] = None,
    feed_service: Optional[FeedService] = None
) -> Flask:
    """
    Create the Flask application.

    Args:
        settings: Configuration, read from the environment when omitted
        feed_service: Pre-built feed service, built from settings when omitted

    Returns:
        Configured Flask app
    """
    settings = settings or Settings.from_env()
    setup_logging(settings.log_level)

    service = feed_service or build_feed_service(settings)

    app = Flask(__name__)
    # Trust X-Forwarded-For / X-Forwarded-Proto from one reverse proxy
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1)
    app.extensions['feed_service'] = service
    Swagger(app, config=SWAGGER_CONFIG, template=SWAGGER_TEMPLATE)

    @app.after_request
    def add_cors_headers(response):
        response.headers['Access-Control-Allow-Origin'] = '*'
        response.headers['Access-Control-Allow-Methods'] = 'GET, POST, OPTIONS'
        response.headers['Access-Control-Allow-Headers'] = '*'
        return response

    @app.route('/calendar/<identifier>', methods=['GET'])
    def get_calendar(identifier):
        """
        Get calendar as ICS feed with events and reminders
        Returns calendar events and reminder tasks for the specified ID as a
        unified ICS (iCalendar) feed. Includes both VEVENT entries for the
        collection dates and VTODO entries for reminders.
        ---
        operationId: GetCalendar
        tags:
          - Calendar
        produces:
          - text/calendar
          - application/json
        parameters:
          - name: identifier
            in: path
            type: string
            required: true
            description: BIR route id (rId) of the address
        responses:
          200:
            description: iCalendar feed served as an attachment
          400:
            description: Blank id
          502:
            description: Unable to fetch calendar data from external source
          500:
            description: An error occurred while processing the calendar request
        """
        try:
            ics_content = service.render_feed(identifier)
        except InvalidArgumentError as e:
            return _problem(str(e), 400)
        except UpstreamUnavailableError:
            logger.error(f"Upstream unavailable for calendar {identifier}", exc_info=True)
            return _problem('Unable to fetch calendar data from external source', 502)
        except Exception:
            logger.error(f"Failed to render calendar {identifier}", exc_info=True)
            return _problem('An error occurred while processing the calendar request', 500)

        filename = secure_filename(f"calendar-{identifier}.ics")
        response = Response(ics_content, mimetype='text/calendar')
        response.headers['Cache-Control'] = f"public, max-age={settings.feed_max_age_seconds}"
        response.headers['Content-Disposition'] = f'attachment; filename="{filename}"'
        return response

    @app.route('/health', methods=['GET'])
    def health():
        """
        Health check
        ---
        operationId: HealthCheck
        tags:
          - Health
        responses:
          200:
            description: Service is up
            schema:
              type: object
              properties:
                status:
                  type: string
                timestamp:
                  type: string
        """
        return jsonify({
            'status': 'Healthy',
            'timestamp': datetime.now(timezone.utc).isoformat()
        })

    @app.route('/admin/clear-cache', methods=['POST'])
    def clear_cache():
        """
        Clear all cached calendars
        ---
        operationId: ClearCache
        tags:
          - Admin
        responses:
          200:
            description: Cache cleared
            schema:
              type: object
              properties:
                message:
                  type: string
        """
        return jsonify(service.clear_cache())

    logger.info(
        "Calendar API initialised",
        extra={
            'base_url': settings.base_url,
            'timeout_seconds': settings.timeout_seconds,
            'calendar_timezone': settings.calendar_timezone
        }
    )
    return app


if __name__ == '__main__':
    create_app().run(host='0.0.0.0', port=int(os.environ.get('PORT', '8080')))
