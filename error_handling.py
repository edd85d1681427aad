#!/usr/bin/env python3
"""
Error types and Flask error handlers for the text captcha service

Widget failures are ordinary state transitions and never raise. The
exceptions here belong to the HTTP layer: unknown widgets, malformed
payloads and rendering problems.
"""

import traceback
from typing import Any, Dict

from flask import Flask, request
from werkzeug.exceptions import HTTPException


class CaptchaError(Exception):
    status_code = 400
    error = 'Bad request'

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {'error': self.error, 'message': self.message}


class UnknownWidgetError(CaptchaError):
    status_code = 404
    error = 'Unknown widget'


class InvalidPayloadError(CaptchaError):
    status_code = 400
    error = 'Invalid payload'


class ChallengeRenderError(CaptchaError):
    status_code = 500
    error = 'Challenge rendering failed'


def _request_context() -> Dict[str, Any]:
    return {
        'request_method': request.method,
        'request_url': request.url,
        'user_agent': request.headers.get('User-Agent'),
    }


class FlaskErrorHandler:
    """Flask error handler with structured logging"""

    def __init__(self, app: Flask, logger):
        self.app = app
        self.logger = logger
        self.setup_handlers()

    def setup_handlers(self):
        """Setup Flask error handlers"""

        @self.app.errorhandler(CaptchaError)
        def captcha_error(error):
            if error.status_code >= 500:
                self.logger.log_error(error, _request_context())
            return error.to_dict(), error.status_code

        @self.app.errorhandler(400)
        def bad_request(error):
            return {'error': 'Bad request', 'message': error.description}, 400

        @self.app.errorhandler(404)
        def not_found(error):
            return {'error': 'Not found', 'message': error.description}, 404

        @self.app.errorhandler(405)
        def method_not_allowed(error):
            return {'error': 'Method not allowed', 'message': error.description}, 405

        @self.app.errorhandler(429)
        def rate_limit_exceeded(error):
            self.logger.log_captcha_event('rate_limit_exceeded', {'url': request.url})
            return {'error': 'Rate limit exceeded', 'message': error.description}, 429

        @self.app.errorhandler(500)
        def internal_error(error):
            self.logger.log_error(error, _request_context())
            return {'error': 'Internal server error', 'message': 'Something went wrong'}, 500

        @self.app.errorhandler(Exception)
        def handle_exception(error):
            """Catch-all exception handler"""
            if isinstance(error, HTTPException):
                return {'error': error.name, 'message': error.description}, error.code

            context = _request_context()
            context['traceback'] = traceback.format_exc()
            self.logger.log_error(error, context)

            # Don't expose internal errors in production
            if self.app.debug:
                return {'error': 'Internal error', 'message': str(error),
                        'traceback': traceback.format_exc()}, 500
            return {'error': 'Internal server error', 'message': 'Something went wrong'}, 500


def setup_error_handling(app: Flask, logger) -> Flask:
    """Install JSON error handlers on the app"""
    FlaskErrorHandler(app, logger)
    return app
