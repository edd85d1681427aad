#!/usr/bin/env python3
"""
Text Captcha service - Startup Validation & Health Check Script
Ensures all system components are operational before application launch
"""

import datetime
import importlib
import json
import logging
import socket
import sys
from pathlib import Path
from typing import List

import psutil


class SystemValidator:
    """Pre-launch environment checks"""

    REQUIRED_PACKAGES = ['numpy', 'cv2', 'flask', 'psutil', 'requests']

    def __init__(self, log_dir='logs', host='127.0.0.1'):
        self.log_dir = Path(log_dir)
        self.host = host
        self.errors = []
        self.warnings = []
        self.success_count = 0
        self.total_checks = 0
        self.logger = logging.getLogger('text_captcha.validation')

    def check_required_ports(self, ports: List[int]) -> bool:
        """Verify all required ports are available"""
        self.logger.info("Checking required ports...")
        failed = False

        for port in ports:
            self.total_checks += 1
            try:
                with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
                    sock.settimeout(1)
                    result = sock.connect_ex((self.host, port))
                if result == 0:
                    self.errors.append(f"Port {port} is already in use")
                    self.logger.error(f"Port {port} is occupied")
                    failed = True
                else:
                    self.success_count += 1
                    self.logger.info(f"Port {port} is available")
            except OSError as e:
                self.errors.append(f"Error checking port {port}: {e}")
                self.logger.error(f"Failed to check port {port}: {e}")
                failed = True

        return not failed

    def check_python_dependencies(self) -> bool:
        """Verify all required Python packages are importable"""
        self.logger.info("Checking Python dependencies...")
        failed = False

        for package in self.REQUIRED_PACKAGES:
            self.total_checks += 1
            try:
                importlib.import_module(package)
                self.success_count += 1
                self.logger.info(f"{package} imported successfully")
            except ImportError as e:
                self.errors.append(f"Missing package: {package} - {e}")
                self.logger.error(f"Failed to import {package}: {e}")
                failed = True

        return not failed

    def check_filesystem_permissions(self) -> bool:
        """Verify the log directory is writable"""
        self.logger.info("Checking filesystem permissions...")
        self.total_checks += 1
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            test_file = self.log_dir / 'test_write.tmp'
            test_file.write_text('test')
            test_file.unlink()
            self.success_count += 1
            self.logger.info(f"Directory {self.log_dir} is writable")
            return True
        except OSError as e:
            self.errors.append(f"Cannot write to directory {self.log_dir}: {e}")
            self.logger.error(f"Cannot write to {self.log_dir}: {e}")
            return False

    def check_challenge_rendering(self) -> bool:
        """Render and encode a sample challenge"""
        self.total_checks += 1
        from error_handling import ChallengeRenderError

        try:
            # cv2 is only needed from here on
            from challenge_image import challenge_data_uri
            from challenge_widget import generate_challenge_text
            uri = challenge_data_uri(generate_challenge_text())
        except (ChallengeRenderError, ImportError) as e:
            self.errors.append(f"Challenge rendering failed: {e}")
            self.logger.error(f"Challenge rendering failed: {e}")
            return False

        self.success_count += 1
        self.logger.info(f"Challenge rendering OK ({len(uri)} bytes)")
        return True

    def check_memory_requirements(self, minimum_gb=0.25) -> bool:
        """Check system memory requirements"""
        self.total_checks += 1
        available_gb = psutil.virtual_memory().available / (1024**3)

        if available_gb >= minimum_gb:
            self.success_count += 1
            self.logger.info(f"Available memory: {available_gb:.2f}GB")
            return True

        self.errors.append(f"Insufficient memory: {available_gb:.2f}GB available (min: {minimum_gb}GB)")
        self.logger.error(f"Insufficient memory: {available_gb:.2f}GB")
        return False

    def run_validation(self, ports=(8080,)) -> bool:
        """Execute all validation checks"""
        self.logger.info("Starting Text Captcha system validation")

        checks_passed = self.check_python_dependencies()
        checks_passed &= self.check_required_ports(list(ports))
        checks_passed &= self.check_filesystem_permissions()
        if checks_passed:
            checks_passed &= self.check_challenge_rendering()
        checks_passed &= self.check_memory_requirements()

        self.generate_validation_report()

        if not checks_passed or self.errors:
            self.logger.error("VALIDATION FAILED - System not ready for launch")
            for error in self.errors:
                self.logger.error(f"   - {error}")
            return False

        self.logger.info("VALIDATION SUCCESSFUL - System ready for launch")
        for warning in self.warnings:
            self.logger.warning(f"   - {warning}")
        return True

    def generate_validation_report(self) -> dict:
        """Write validation_report.json into the log directory"""
        self.logger.info(f"Passed: {self.success_count}/{self.total_checks}, "
                         f"errors: {len(self.errors)}, warnings: {len(self.warnings)}")

        report = {
            "timestamp": str(datetime.datetime.now()),
            "success_rate": self.success_count / self.total_checks * 100 if self.total_checks else 0,
            "passed_checks": self.success_count,
            "total_checks": self.total_checks,
            "errors": self.errors,
            "warnings": self.warnings,
            "system_ready": len(self.errors) == 0
        }

        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with open(self.log_dir / 'validation_report.json', 'w') as f:
                json.dump(report, f, indent=2)
        except OSError as e:
            self.logger.error(f"Failed to save validation report: {e}")
        return report


def main():
    """Main entry point for validation script"""
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
    validator = SystemValidator()
    sys.exit(0 if validator.run_validation() else 1)


if __name__ == "__main__":
    main()
