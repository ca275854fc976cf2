# -*- coding: utf-8 -*-
"""Configuration of the HTTP API"""

from __future__ import annotations

import os

from mailposture._constants import (
    DEFAULT_DKIM_SELECTORS,
    DNS_TIMEOUT,
    DNS_TIMEOUT_RETRIES,
    PIPELINE_TIMEOUT,
)

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


env = os.environ


def _env_list(name: str) -> list[str]:
    return [value.strip() for value in env.get(name, "").split(",") if value.strip()]


def _env_bool(name: str, default: bool) -> bool:
    if name not in env:
        return default
    return env[name].lower() in ("true", "1", "t", "yes")


class Config(object):
    """Base configuration"""

    DEBUG = False
    TESTING = False

    LOG_LEVEL = env.get("LOG_LEVEL", "INFO")
    LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    CORS_ORIGINS = _env_list("CORS_ORIGINS") or "*"

    # A dns.resolver.Resolver to use instead of building one per query
    DNS_RESOLVER = None
    DNS_NAMESERVERS = _env_list("DNS_NAMESERVERS") or None
    DNS_TIMEOUT = DNS_TIMEOUT
    DNS_TIMEOUT_RETRIES = DNS_TIMEOUT_RETRIES
    PIPELINE_TIMEOUT = PIPELINE_TIMEOUT
    DKIM_SELECTORS = DEFAULT_DKIM_SELECTORS

    RESULT_CACHE_ENABLED = _env_bool("RESULT_CACHE_ENABLED", True)


class DevelopmentConfig(Config):
    DEBUG = True
    LOG_LEVEL = "DEBUG"
    RESULT_CACHE_ENABLED = False


class TestingConfig(Config):
    TESTING = True
    RESULT_CACHE_ENABLED = False


class ProductionConfig(Config):
    LOG_LEVEL = env.get("LOG_LEVEL", "WARNING")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": ProductionConfig,
}


def get_config() -> type[Config]:
    """Returns the configuration class named by ``MAILPOSTURE_ENV``"""
    return config.get(env.get("MAILPOSTURE_ENV", "default"), config["default"])
