# -*- coding: utf-8 -*-
"""HTTP API for email domain posture reports"""

from __future__ import annotations

import logging
from typing import Optional

from flask import Blueprint, Flask, current_app, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from mailposture import check_domain, dkim_report, dmarc_report, spf_report
from mailposture.cache import ResultCache
from mailposture.config import Config, get_config
from mailposture.utils import InvalidDomainInput, validate_domain

"""Copyright 2019-2023 Sean Whalen

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

   https://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License."""


logger = logging.getLogger(__name__)

api_bp = Blueprint("api", __name__, url_prefix="/api")


class APIError(Exception):
    """Base class for API errors"""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        return {"status": "error", "message": self.message}


class BadRequestError(APIError):
    """Raised for a missing or malformed request parameter"""

    status_code = 400


def register_error_handlers(app: Flask):
    """Registers JSON error handlers on a Flask app"""

    @app.errorhandler(APIError)
    def handle_api_error(error: APIError):
        response = jsonify(error.to_dict())
        response.status_code = error.status_code
        return response

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return jsonify({"status": "error", "message": error.description}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        logger.error(f"Unexpected error: {error}", exc_info=True)
        return (
            jsonify({"status": "error", "message": "An unexpected error occurred"}),
            500,
        )


def _domain_param() -> str:
    try:
        return validate_domain(request.args.get("domain"))
    except InvalidDomainInput as error:
        raise BadRequestError(str(error))


def _check_options() -> dict:
    config = current_app.config
    return dict(
        nameservers=config["DNS_NAMESERVERS"],
        resolver=config["DNS_RESOLVER"],
        timeout=config["DNS_TIMEOUT"],
        timeout_retries=config["DNS_TIMEOUT_RETRIES"],
        pipeline_timeout=config["PIPELINE_TIMEOUT"],
        cache=current_app.extensions["mailposture"]["cache"],
    )


def _respond(endpoint: str, domain: str, report: dict):
    logger.info(
        f"{endpoint} {domain} request {report['requestId']} took "
        f"{report['responseTime']} ms"
    )
    return jsonify(report)


@api_bp.route("/spf", methods=["GET"])
def spf():
    domain = _domain_param()
    return _respond("spf", domain, spf_report(domain, **_check_options()))


@api_bp.route("/dkim", methods=["GET"])
def dkim():
    domain = _domain_param()
    selectors = [
        s.strip() for s in request.args.get("selector", "").split(",") if s.strip()
    ]
    if not selectors:
        selectors = current_app.config["DKIM_SELECTORS"]
    report = dkim_report(domain, selectors=selectors, **_check_options())
    return _respond("dkim", domain, report)


@api_bp.route("/dmarc", methods=["GET"])
def dmarc():
    domain = _domain_param()
    return _respond("dmarc", domain, dmarc_report(domain, **_check_options()))


@api_bp.route("/score", methods=["GET"])
def score():
    domain = _domain_param()
    report = check_domain(
        domain, selectors=current_app.config["DKIM_SELECTORS"], **_check_options()
    )
    return _respond("score", domain, report)


def create_app(config_object: Optional[type[Config]] = None) -> Flask:
    """
    Creates the HTTP API application

    Args:
        config_object: A :class:`mailposture.config.Config` class; defaults
                       to the one named by ``MAILPOSTURE_ENV``

    Returns:
        flask.Flask: The application
    """
    app = Flask(__name__)
    app.config.from_object(config_object or get_config())
    app.json.sort_keys = False

    logging.basicConfig(
        level=app.config["LOG_LEVEL"], format=app.config["LOG_FORMAT"]
    )
    logger.setLevel(app.config["LOG_LEVEL"])

    cache = None
    if app.config["RESULT_CACHE_ENABLED"]:
        cache = ResultCache()
    app.extensions["mailposture"] = {"cache": cache}

    CORS(app, resources={r"/api/*": {"origins": app.config["CORS_ORIGINS"]}})
    register_error_handlers(app)
    app.register_blueprint(api_bp)

    logger.debug(f"Created API app, result cache enabled: {cache is not None}")
    return app


if __name__ == "__main__":
    create_app().run()
