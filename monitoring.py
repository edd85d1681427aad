#!/usr/bin/env python3
"""
Production Monitoring and Logging for the Text Captcha service
"""

import json
import logging
import logging.handlers
import os
import threading
import time
from datetime import datetime, timedelta, timezone
from functools import wraps

import psutil
from flask import g, has_app_context, jsonify, request

SECURITY_EVENTS = {'bot_detected', 'locked_out', 'input_rejected',
                   'verification_rejected', 'rate_limit_exceeded'}
LOG_TYPES = ('access', 'error', 'security')


def _client_ip():
    if has_app_context():
        return getattr(g, 'client_ip', 'unknown')
    return 'unknown'


class CaptchaLogger:
    def __init__(self, log_dir='logs'):
        self.log_dir = log_dir
        self.setup_logging()

    def setup_logging(self):
        """Setup rotating file logs plus console output"""
        os.makedirs(self.log_dir, exist_ok=True)

        self.logger = logging.getLogger('text_captcha')
        self.logger.setLevel(logging.INFO)
        self._reset_handlers(self.logger)

        access_handler = logging.handlers.RotatingFileHandler(
            os.path.join(self.log_dir, 'access.log'),
            maxBytes=10*1024*1024,  # 10MB
            backupCount=5
        )
        access_handler.setLevel(logging.INFO)

        error_handler = logging.handlers.RotatingFileHandler(
            os.path.join(self.log_dir, 'error.log'),
            maxBytes=5*1024*1024,   # 5MB
            backupCount=5
        )
        error_handler.setLevel(logging.ERROR)

        security_handler = logging.handlers.RotatingFileHandler(
            os.path.join(self.log_dir, 'security.log'),
            maxBytes=5*1024*1024,   # 5MB
            backupCount=5
        )
        security_handler.setLevel(logging.WARNING)

        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.INFO)

        detailed_formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        access_formatter = logging.Formatter('%(asctime)s - %(message)s')

        access_handler.setFormatter(access_formatter)
        error_handler.setFormatter(detailed_formatter)
        security_handler.setFormatter(detailed_formatter)
        console_handler.setFormatter(detailed_formatter)

        self.logger.addHandler(access_handler)
        self.logger.addHandler(error_handler)
        self.logger.addHandler(console_handler)

        # Security events also reach the main handlers through propagation
        self.security_logger = logging.getLogger('text_captcha.security')
        self._reset_handlers(self.security_logger)
        self.security_logger.addHandler(security_handler)
        self.security_logger.setLevel(logging.WARNING)

    @staticmethod
    def _reset_handlers(logger):
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()

    def log_request(self, endpoint, method, status_code, response_time, ip=None, user_agent=None):
        """Log HTTP request"""
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'method': method,
            'endpoint': endpoint,
            'status_code': status_code,
            'response_time_ms': round(response_time * 1000, 2),
            'ip': ip or _client_ip(),
            'user_agent': user_agent or 'unknown'
        }

        self.logger.info(f"ACCESS: {json.dumps(log_data)}")

    def log_captcha_event(self, event_type, data, ip=None):
        """Log widget events; security-class events go to security.log"""
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'event_type': event_type,
            'ip': ip or _client_ip(),
            'data': data
        }

        if event_type in SECURITY_EVENTS:
            self.security_logger.warning(f"SECURITY: {json.dumps(log_data)}")
        else:
            self.logger.info(f"CAPTCHA: {json.dumps(log_data)}")

    def log_error(self, error, context=None):
        """Log errors with context"""
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'error': str(error),
            'type': type(error).__name__,
            'context': context or {},
            'ip': _client_ip()
        }

        self.logger.error(f"ERROR: {json.dumps(log_data, default=str)}")

    def log_performance(self, operation, duration, details=None):
        """Log performance metrics"""
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'operation': operation,
            'duration_ms': round(duration * 1000, 2),
            'details': details or {}
        }

        self.logger.info(f"PERFORMANCE: {json.dumps(log_data)}")

    def read_log(self, log_type, lines=50):
        """Tail of one of the log files"""
        if log_type not in LOG_TYPES:
            raise ValueError(f"Unknown log type: {log_type}")
        log_file = os.path.join(self.log_dir, f'{log_type}.log')
        if not os.path.exists(log_file):
            return [], 0
        with open(log_file, 'r') as f:
            all_lines = f.readlines()
        recent_lines = all_lines[-lines:] if lines > 0 else all_lines
        return [line.strip() for line in recent_lines], len(all_lines)


class PerformanceMonitor:
    def __init__(self, logger, slow_threshold=1.0):
        self.logger = logger
        self.slow_threshold = slow_threshold
        self.metrics = {}
        self.lock = threading.Lock()

    def time_operation(self, operation_name):
        """Decorator to time operations"""
        def decorator(func):
            @wraps(func)
            def wrapper(*args, **kwargs):
                start_time = time.time()
                success = True
                error = None
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    success = False
                    error = str(e)
                    raise
                finally:
                    duration = time.time() - start_time
                    self.record_metric(operation_name, duration, success, error)
            return wrapper
        return decorator

    def record_metric(self, operation, duration, success=True, error=None):
        """Record performance metric"""
        with self.lock:
            if operation not in self.metrics:
                self.metrics[operation] = {
                    'count': 0,
                    'total_duration': 0,
                    'success_count': 0,
                    'error_count': 0,
                    'min_duration': float('inf'),
                    'max_duration': 0,
                    'errors': []
                }

            metric = self.metrics[operation]
            metric['count'] += 1
            metric['total_duration'] += duration
            metric['min_duration'] = min(metric['min_duration'], duration)
            metric['max_duration'] = max(metric['max_duration'], duration)

            if success:
                metric['success_count'] += 1
            else:
                metric['error_count'] += 1
                if error and len(metric['errors']) < 10:
                    metric['errors'].append(error)

            avg_duration = metric['total_duration'] / metric['count']

        if duration > self.slow_threshold:
            self.logger.log_performance(operation, duration, {
                'success': success,
                'avg_duration': avg_duration
            })

    def get_metrics(self):
        """Get all performance metrics"""
        with self.lock:
            result = {}
            for operation, metric in self.metrics.items():
                if metric['count'] > 0:
                    result[operation] = {
                        'count': metric['count'],
                        'avg_duration_ms': round(metric['total_duration'] / metric['count'] * 1000, 2),
                        'min_duration_ms': round(metric['min_duration'] * 1000, 2),
                        'max_duration_ms': round(metric['max_duration'] * 1000, 2),
                        'success_rate': round(metric['success_count'] / metric['count'] * 100, 2),
                        'error_count': metric['error_count'],
                        'recent_errors': metric['errors'][-5:]
                    }
            return result


class HealthMonitor:
    def __init__(self, logger, registry):
        self.logger = logger
        self.registry = registry
        self.start_time = time.time()

    def check_registry_health(self):
        """Mounted widget counts"""
        try:
            stats = self.registry.get_stats()
            return {
                'status': 'healthy',
                'active_widgets': stats['active_widgets'],
                'locked_widgets': stats['locked_widgets']
            }
        except Exception as e:
            self.logger.log_error(e, {'operation': 'check_registry_health'})
            return {'status': 'unhealthy', 'error': str(e)}

    def check_memory_usage(self):
        """Check memory usage"""
        try:
            process = psutil.Process()
            memory_info = process.memory_info()
            return {
                'status': 'healthy',
                'rss_mb': round(memory_info.rss / 1024 / 1024, 2),
                'vms_mb': round(memory_info.vms / 1024 / 1024, 2),
                'cpu_percent': process.cpu_percent()
            }
        except psutil.Error as e:
            return {'status': 'unhealthy', 'error': str(e)}

    def get_system_health(self):
        """Get overall system health"""
        uptime = time.time() - self.start_time

        health = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'uptime_seconds': round(uptime, 2),
            'uptime_formatted': str(timedelta(seconds=int(uptime))),
            'registry': self.check_registry_health(),
            'memory': self.check_memory_usage(),
            'overall_status': 'healthy'
        }

        for component in ['registry', 'memory']:
            if health[component].get('status') == 'unhealthy':
                health['overall_status'] = 'unhealthy'
                break
            elif health[component].get('status') == 'degraded':
                health['overall_status'] = 'degraded'

        return health


# Global instances
captcha_logger = CaptchaLogger(os.environ.get('CAPTCHA_LOG_DIR', 'logs'))
performance_monitor = PerformanceMonitor(captcha_logger)


def setup_monitoring(app, registry, logger=None):
    """Setup request logging and admin endpoints for a Flask app"""
    logger = logger or captcha_logger
    health_monitor = HealthMonitor(logger, registry)

    @app.before_request
    def before_request():
        g.start_time = time.time()
        g.client_ip = request.environ.get('HTTP_X_FORWARDED_FOR', request.remote_addr) or 'unknown'

    @app.after_request
    def after_request(response):
        if hasattr(g, 'start_time'):
            response_time = time.time() - g.start_time
            logger.log_request(
                request.endpoint,
                request.method,
                response.status_code,
                response_time,
                g.client_ip,
                request.headers.get('User-Agent')
            )
        return response

    @app.route('/admin/health')
    def health_check():
        """System health check endpoint"""
        return jsonify(health_monitor.get_system_health())

    @app.route('/admin/metrics')
    def get_metrics():
        """Performance metrics endpoint"""
        return jsonify(performance_monitor.get_metrics())

    @app.route('/admin/logs', methods=['GET'])
    def get_logs():
        """Get recent logs"""
        log_type = request.args.get('type', 'access')
        lines = request.args.get('lines', 50, type=int)

        if log_type not in LOG_TYPES:
            return jsonify({'error': f'Unknown log type: {log_type}'}), 400

        logs, total = logger.read_log(log_type, lines)
        if not total:
            return jsonify({'logs': [], 'message': 'Log file not found or empty'})
        return jsonify({'logs': logs, 'total_lines': total})

    return health_monitor


# Monitoring decorators
def monitor_captcha_generation(func):
    """Monitor challenge generation performance"""
    return performance_monitor.time_operation('captcha_generation')(func)


def monitor_verification(func):
    """Monitor verification performance"""
    return performance_monitor.time_operation('verification')(func)
