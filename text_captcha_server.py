#!/usr/bin/env python3
"""
Text Captcha service: hosts challenge widgets behind a JSON API and gates
account registration on the widget's verified signal
"""

import os
from datetime import timedelta

from flask import Flask, jsonify, request

from challenge_image import challenge_data_uri
from challenge_widget import DEFAULT_CONFIG
from error_handling import InvalidPayloadError, setup_error_handling
from monitoring import (captcha_logger, monitor_captcha_generation,
                        monitor_verification, setup_monitoring)
from widget_registry import WidgetRegistry


def widget_config_from_env(environ=None):
    """CAPTCHA_<KEY> integer overrides for the widget thresholds"""
    environ = os.environ if environ is None else environ
    overrides = {}
    for key in DEFAULT_CONFIG:
        raw = environ.get(f'CAPTCHA_{key.upper()}')
        if raw is None:
            continue
        try:
            overrides[key] = int(raw)
        except ValueError:
            raise ValueError(f"CAPTCHA_{key.upper()} must be an integer, got {raw!r}") from None
    return overrides


def default_config(environ=None):
    environ = os.environ if environ is None else environ
    return {
        'HOST': environ.get('CAPTCHA_HOST', '127.0.0.1'),
        'PORT': int(environ.get('CAPTCHA_PORT', 8080)),
        'SECRET_KEY': environ.get('CAPTCHA_SECRET_KEY', 'text_captcha_dev'),
        'SESSION_COOKIE_HTTPONLY': True,
        'SESSION_COOKIE_SAMESITE': 'Lax',
        'PERMANENT_SESSION_LIFETIME': timedelta(minutes=30),
        'MAX_INPUT_LENGTH': 64,
        'MAX_POINTER_BATCH': 500,
        'WIDGET_IDLE_TIMEOUT_MS': 10 * 60 * 1000,
        'CAPTCHA': widget_config_from_env(environ),
    }


def _json_payload():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidPayloadError("Request body must be a JSON object")
    return data


def _widget_payload(widget_id, widget, include_image=True):
    payload = {'widget_id': widget_id, **widget.status()}
    if include_image:
        payload['challenge_image'] = challenge_data_uri(widget.session.challenge_text)
    return payload


def create_app(config=None, clock=None, registry=None):
    app = Flask(__name__, static_folder=None)
    app.config.update(default_config())
    if config:
        app.config.update(config)

    if registry is None:
        registry = WidgetRegistry(clock=clock, config=app.config['CAPTCHA'])
    app.extensions['widget_registry'] = registry

    setup_error_handling(app, captcha_logger)
    setup_monitoring(app, registry)

    @app.route('/api/captcha', methods=['POST'])
    @monitor_captcha_generation
    def mount_widget():
        registry.cleanup_idle(app.config['WIDGET_IDLE_TIMEOUT_MS'])
        widget_id, widget = registry.mount(ip=request.remote_addr)
        return jsonify(_widget_payload(widget_id, widget)), 201

    @app.route('/api/captcha/<widget_id>', methods=['GET'])
    def widget_status(widget_id):
        widget = registry.get(widget_id)
        return jsonify(_widget_payload(widget_id, widget))

    @app.route('/api/captcha/<widget_id>', methods=['DELETE'])
    def unmount_widget(widget_id):
        if not registry.unmount(widget_id):
            registry.get(widget_id)  # raises UnknownWidgetError
        return jsonify({'widget_id': widget_id, 'mounted': False})

    @app.route('/api/captcha/<widget_id>/refresh', methods=['POST'])
    @monitor_captcha_generation
    def refresh_widget(widget_id):
        widget = registry.get(widget_id)
        widget.refresh()
        return jsonify(_widget_payload(widget_id, widget))

    @app.route('/api/captcha/<widget_id>/pointer', methods=['POST'])
    def pointer_moves(widget_id):
        widget = registry.get(widget_id)
        count = _json_payload().get('count', 1)
        max_batch = app.config['MAX_POINTER_BATCH']
        if isinstance(count, bool) or not isinstance(count, int) or not 1 <= count <= max_batch:
            raise InvalidPayloadError(f"count must be an integer between 1 and {max_batch}")
        for _ in range(count):
            widget.on_pointer_move()
        return jsonify({'widget_id': widget_id, 'accepted': count})

    @app.route('/api/captcha/<widget_id>/input', methods=['POST'])
    def input_change(widget_id):
        widget = registry.get(widget_id)
        value = _json_payload().get('value')
        if not isinstance(value, str):
            raise InvalidPayloadError("value must be a string")
        if len(value) > app.config['MAX_INPUT_LENGTH']:
            raise InvalidPayloadError(f"value longer than {app.config['MAX_INPUT_LENGTH']} characters")
        widget.on_input_change(value)
        return jsonify({'widget_id': widget_id, 'accepted': True})

    @app.route('/api/captcha/<widget_id>/paste', methods=['POST'])
    def paste_input(widget_id):
        widget = registry.get(widget_id)
        return jsonify({'widget_id': widget_id, 'accepted': widget.on_paste(),
                        'message': 'Please type the code'})

    @app.route('/api/captcha/<widget_id>/drop', methods=['POST'])
    def drop_input(widget_id):
        widget = registry.get(widget_id)
        return jsonify({'widget_id': widget_id, 'accepted': widget.on_drop(),
                        'message': 'Please type the code'})

    @app.route('/api/captcha/<widget_id>/verify', methods=['POST'])
    @monitor_verification
    def verify_widget(widget_id):
        widget = registry.get(widget_id)
        result = widget.verify()
        payload = {'widget_id': widget_id, **result.to_dict()}
        if result.locked:
            payload['message'] = 'Too many attempts. Please wait before trying again.'
        elif not result.verified:
            payload['challenge_image'] = challenge_data_uri(widget.session.challenge_text)
        return jsonify(payload)

    @app.route('/api/register', methods=['POST'])
    def register():
        data = _json_payload()
        fields = ('name', 'email', 'password', 'confirm_password', 'widget_id')
        missing = [f for f in fields if not isinstance(data.get(f), str) or not data.get(f)]
        if missing:
            raise InvalidPayloadError(f"Missing fields: {', '.join(missing)}")

        if data['password'] != data['confirm_password']:
            return jsonify({'error': 'Passwords do not match',
                            'message': 'Please make sure your passwords match'}), 400

        widget_id = data['widget_id']
        if not registry.consume(widget_id):
            return jsonify({'error': 'CAPTCHA verification required',
                            'message': 'Please complete the CAPTCHA verification'}), 403

        captcha_logger.log_captcha_event('registration_accepted', {'widget_id': widget_id})
        return jsonify({'success': True, 'name': data['name'], 'email': data['email'],
                        'message': 'Registration accepted'}), 201

    @app.route('/api/analytics')
    def analytics():
        return jsonify(registry.get_stats())

    return app


if __name__ == '__main__':
    from startup_validation import SystemValidator

    app = create_app()
    dev_mode = os.environ.get('FLASK_ENV', 'development') == 'development'

    validator = SystemValidator(log_dir=captcha_logger.log_dir)
    if not validator.run_validation(ports=[app.config['PORT']]):
        raise SystemExit(1)

    widget_config = dict(DEFAULT_CONFIG, **app.config['CAPTCHA'])
    captcha_logger.logger.info(
        f"Starting Text Captcha on http://{app.config['HOST']}:{app.config['PORT']} "
        f"(lockout after {widget_config['max_failures']} failures, "
        f"{widget_config['lockout_ms'] // 1000}s)"
    )
    app.run(host=app.config['HOST'], port=app.config['PORT'], debug=dev_mode, use_reloader=False)
