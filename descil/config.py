import io
import json
import logging
import os
from collections import deque
from configparser import ConfigParser
from configparser import Error as ConfigParserError
from dataclasses import dataclass
from typing import Optional

from descil.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

marker = object()

LOCAL_CONFIG = "config.txt"
GLOBAL_CONFIG = ".descilconfig"


def strtobool(value):
    value = value.strip().lower()
    if value in ("y", "yes", "t", "true", "on", "1"):
        return True
    if value in ("n", "no", "f", "false", "off", "0"):
        return False
    raise ValueError("invalid truth value {!r}".format(value))


def is_http_uri(value):
    if not value.lower().startswith(("http://", "https://")):
        raise ValueError("{} is not an http(s) URI".format(value))


def is_positive(value):
    if value <= 0:
        raise ValueError("{} must be positive".format(value))


default_keys = (
    # These are the keys allowed in a descil config.txt file.
    ("descil_service_key", str, ["DESCIL_SERVICE_KEY", "key", "servicekey"]),
    ("descil_project_code", str, ["DESCIL_PROJECT_CODE", "project"]),
    ("descil_uri", str, ["DESCIL_URI", "uri"], [is_http_uri]),
    ("descil_codes_file", str, ["DESCIL_CODES_FILE", "file"]),
    ("descil_timeout", float, ["DESCIL_TIMEOUT", "timeout"], [is_positive]),
    ("loglevel", int, ["DESCIL_LOGLEVEL"]),
)


class Configuration(object):
    SUPPORTED_TYPES = {str, int, float, bool}

    def __init__(self):
        self.clear()
        self.types = {}
        self.synonyms = {}
        self.validators = {}

    def clear(self):
        self.data = deque()
        self.ready = False

    def extend(self, mapping, cast_types=False, strict=False):
        normalized_mapping = {}
        for key, value in mapping.items():
            key = self.synonyms.get(key, key)
            if key not in self.types:
                # This key hasn't been registered, we ignore it
                if strict:
                    raise KeyError("{} is not a valid configuration key".format(key))
                continue
            expected_type = self.types.get(key)
            if cast_types:
                try:
                    if expected_type is bool and isinstance(value, str):
                        value = strtobool(value)
                    value = expected_type(value)
                except (TypeError, ValueError):
                    pass
            if not isinstance(value, expected_type):
                raise TypeError(
                    "Got {value} for {key}, expected {expected_type}".format(
                        value=repr(value), key=key, expected_type=expected_type
                    )
                )
            for validator in self.validators.get(key, []):
                try:
                    validator(value)
                except ValueError as e:
                    raise ValueError("Invalid {}: {}".format(key, e)) from e
            normalized_mapping[key] = value
        self.data.extendleft([normalized_mapping])

    def get(self, key, default=marker):
        if not self.ready:
            raise RuntimeError("Config not loaded")
        key = self.synonyms.get(key, key)
        for layer in self.data:
            try:
                value = layer[key]
                if isinstance(value, str):
                    value = value.strip()
                return value
            except KeyError:
                continue
        if default is marker:
            raise KeyError(
                f"The following config parameter was not set: {key}. "
                f"Consider setting it in {LOCAL_CONFIG} or in ~/{GLOBAL_CONFIG}."
            )
        return default

    def register(self, key, type_, synonyms=None, validators=None):
        if synonyms is None:
            synonyms = set()
        if key in self.types:
            raise KeyError("Config key {} is already registered".format(key))
        if type_ not in self.SUPPORTED_TYPES:
            raise TypeError("{type} is not a supported type".format(type=type_))
        self.types[key] = type_
        for synonym in synonyms:
            self.synonyms[synonym] = key

        if validators:
            self.validators[key] = validators

    def _extend_from(self, source, data, strict):
        """Add a layer read from ``source``, reporting bad values as
        ``ConfigurationError``."""
        try:
            self.extend(data, cast_types=True, strict=strict)
        except (KeyError, TypeError, ValueError) as e:
            message = e.args[0] if e.args else e
            raise ConfigurationError(
                "descil: invalid configuration in {}: {}".format(source, message)
            ) from e
        logger.debug("Loaded configuration from %s", source)

    def load_from_file(self, filename, strict=True):
        parser = ConfigParser()
        try:
            parser.read(filename)
        except ConfigParserError as e:
            raise ConfigurationError(
                "descil: cannot parse {}: {}".format(filename, e)
            ) from e
        data = {}
        for section in parser.sections():
            data.update(dict(parser.items(section)))
        self._extend_from(filename, data, strict)

    def load_from_json(self, filename, strict=True):
        """Load a JSON object such as ``{"key": ..., "project": ..., "uri": ...}``."""
        try:
            with io.open(filename, "rt", encoding="utf-8") as source_file:
                data = json.load(source_file)
        except (OSError, ValueError) as e:
            raise ConfigurationError(
                "descil: cannot read {}: {}".format(filename, e)
            ) from e
        if not isinstance(data, dict):
            raise ConfigurationError(
                "{} does not contain a JSON object".format(filename)
            )
        self._extend_from(filename, data, strict)

    def load_from_environment(self):
        self._extend_from(
            "the environment",
            {k: v for k, v in os.environ.items() if k.startswith("DESCIL_")},
            strict=False,
        )

    def load_defaults(self, strict=True):
        """Load default configuration values"""
        global_config = os.path.expanduser(os.path.join("~/", GLOBAL_CONFIG))
        defaults_file = os.path.join(
            os.path.dirname(__file__), "default_configs", "defaults.txt"
        )

        # Load the configuration, with local parameters overriding global ones.
        for config_file in [defaults_file, global_config]:
            self.load_from_file(config_file, strict)

    def load(self, strict=True, json_file=None):
        self.load_defaults(strict)

        localConfig = os.path.join(os.getcwd(), LOCAL_CONFIG)
        if os.path.exists(localConfig):
            self.load_from_file(localConfig, strict)

        if json_file is not None:
            self.load_from_json(json_file, strict)

        self.load_from_environment()
        self.ready = True


config = None


def get_config():
    global config

    if config is None:
        config = Configuration()

        for registration in default_keys:
            config.register(*registration)

    return config


@dataclass
class ServiceSettings:
    """The validated settings needed to talk to the DeSciL service.

    Either ``uri`` or ``codes_file`` must be present. With only a codes file
    the connector works offline.
    """

    service_key: str
    project_code: str
    uri: Optional[str] = None
    codes_file: Optional[str] = None
    timeout: Optional[float] = None

    def __post_init__(self):
        if not isinstance(self.service_key, str) or not self.service_key:
            raise ConfigurationError("descil: no service key found.")
        if not isinstance(self.project_code, str) or not self.project_code:
            raise ConfigurationError("descil: no project code found.")
        if not self.uri and not self.codes_file:
            raise ConfigurationError(
                "descil: no service uri or local codes file found."
            )
        if self.codes_file and not os.path.exists(self.codes_file):
            raise ConfigurationError(
                "descil: codes file {} does not exist.".format(self.codes_file)
            )

    @property
    def offline(self):
        return not self.uri

    @classmethod
    def from_config(cls, config):
        return cls(
            service_key=config.get("descil_service_key", None),
            project_code=config.get("descil_project_code", None),
            uri=config.get("descil_uri", None) or None,
            codes_file=config.get("descil_codes_file", None) or None,
            timeout=config.get("descil_timeout", None),
        )
