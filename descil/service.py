import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from numbers import Number
from typing import Any, Optional

import requests
from gevent.event import AsyncResult
from gevent.pool import Group

from descil.config import ServiceSettings, get_config
from descil.exceptions import (
    ConfigurationError,
    DescilServiceException,
    TransportError,
    ValidationError,
)
from descil.registry import CodeRegistry

logger = logging.getLogger(__name__)


@dataclass
class ServiceResponse:
    """Outcome of one successful operation.

    Args:
        operation (str): The operation name, e.g. ``"CheckIn"``
        body: The decoded response body, None if no exchange took place
        status_code (int): HTTP status of the exchange, None if there was none
        new_request (bool): False when the result was served from the
            registry or from another caller's in-flight GetCodes
    """

    operation: str
    body: Any = None
    status_code: Optional[int] = None
    new_request: bool = True


class DescilService(object):
    """
    Wrapper for the DeSciL turker authentication service

    Every operation returns a :class:`gevent.event.AsyncResult` which is
    resolved with a :class:`ServiceResponse`, or with a
    :class:`~descil.exceptions.ValidationError` or
    :class:`~descil.exceptions.TransportError`. ``result.get()`` returns the
    response or raises the error.

    params:
        service_key: DeSciL service key
        project_code: DeSciL project code
        uri: URI of the service endpoint
        codes_file: Optional local JSON file read instead of fetching codes
        timeout: Optional request timeout in seconds
        registry: The :class:`~descil.registry.CodeRegistry` to keep codes in
    """

    requires_uri = True

    def __init__(
        self,
        service_key: str,
        project_code: str,
        uri: Optional[str] = None,
        codes_file: Optional[str] = None,
        timeout: Optional[float] = None,
        registry: Optional[CodeRegistry] = None,
    ):
        self.settings = ServiceSettings(
            service_key=service_key,
            project_code=project_code,
            uri=uri,
            codes_file=codes_file,
            timeout=timeout,
        )
        if self.requires_uri and self.settings.offline:
            raise ConfigurationError(
                "descil: no service uri found. "
                "Use OfflineDescilService to work from a local codes file."
            )
        self.service_key = service_key
        # For error logging:
        self.service_key_fragment = _mask(service_key)
        self.project_code = project_code
        self.uri = uri
        self.codes_file = codes_file
        self.timeout = timeout
        self.registry = registry if registry is not None else CodeRegistry()
        self._exchanges = Group()
        self._fetch = None
        self._fetch_waiters = []

    @classmethod
    def from_settings(cls, settings: ServiceSettings, registry=None):
        return cls(
            service_key=settings.service_key,
            project_code=settings.project_code,
            uri=settings.uri,
            codes_file=settings.codes_file,
            timeout=settings.timeout,
            registry=registry,
        )

    @property
    def configuration(self) -> dict:
        """The settings in use, with the service key masked."""
        return {
            "SERVICEKEY": self.service_key_fragment,
            "PROJECT": self.project_code,
            "DESCIL_URI": self.uri,
            "FILE": self.codes_file,
        }

    @property
    def fetching(self) -> bool:
        """True while a GetCodes exchange is in flight."""
        return self._fetch is not None

    def get_codes(self, force: bool = False, callback=None) -> AsyncResult:
        """Fetch the project's access codes and merge them into the registry.

        Only one GetCodes exchange is in flight at a time. If codes have
        already been loaded the result is ready immediately, unless ``force``
        is set. Calls made while an exchange is in flight are queued and
        resolved with its outcome. In both cases ``new_request`` is False.
        """
        error = _check_callback("getCodes", callback)
        if error:
            return self._invalid(error, callback)

        result = AsyncResult()
        _link(result, callback)

        if self._fetch is not None:
            logger.info("GetCodes request already in flight, queuing.")
            self._fetch_waiters.append(result)
            return result

        if len(self.registry) and not force:
            result.set(ServiceResponse("GetCodes", new_request=False))
            return result

        self._fetch = self._exchanges.spawn(self._fetch_codes, result)
        return result

    def check_in(self, access_code: str, callback=None) -> AsyncResult:
        """Validate an access code with the service.

        The local record, if known, is marked as checked in before the
        request is sent.
        """
        error = _check_callback("checkIn", callback) or _check_strings(
            "checkIn", accesscode=access_code
        )
        if error:
            return self._invalid(error, callback)

        if self._known(access_code):
            self.registry.mark_checked_in(access_code)

        body = self._request_body("CheckIn", AccessCode=access_code)
        return self._send("CheckIn", body, callback)

    def check_out(
        self, access_code: str, exit_code: str, bonus=0, callback=None
    ) -> AsyncResult:
        """Mark a worker as checked out, and optionally assign a bonus.

        When finishing a task each turker receives an exit code. The pair
        (access code, exit code) is then checked out.
        """
        bonus = bonus or 0
        error = (
            _check_callback("checkOut", callback)
            or _check_strings("checkOut", accesscode=access_code, exitcode=exit_code)
            or _check_bonus("checkOut", bonus)
        )
        if error:
            return self._invalid(error, callback)

        if self._known(access_code):
            self.registry.mark_checked_out(access_code, exit_code, bonus)

        body = self._request_body(
            "CheckOut", AccessCode=access_code, ExitCode=exit_code, Bonus=bonus
        )
        return self._send("CheckOut", body, callback)

    def drop_out(
        self, access_code: str, exit_code: str, bonus=0, callback=None
    ) -> AsyncResult:
        """Mark a worker as dropped out, and optionally assign a bonus.

        Exit code and bonus are sent along with the access code, as for
        check-out.
        """
        bonus = bonus or 0
        error = (
            _check_callback("dropOut", callback)
            or _check_strings("dropOut", accesscode=access_code, exitcode=exit_code)
            or _check_bonus("dropOut", bonus)
        )
        if error:
            return self._invalid(error, callback)

        if self._known(access_code):
            self.registry.mark_dropped_out(access_code, exit_code, bonus)

        body = self._request_body(
            "DropOut", AccessCode=access_code, ExitCode=exit_code, Bonus=bonus
        )
        return self._send("DropOut", body, callback)

    def post_codes(self, codes: list, callback=None) -> AsyncResult:
        """Post a batch of check-out / drop-out results in one request.

        ``CodeRegistry.exit_codes()`` builds such a batch from local state.
        """
        error = _check_callback("postCodes", callback) or _check_batch(
            "postCodes", "codes", codes
        )
        if error:
            return self._invalid(error, callback)

        body = self._request_body("PostCodes", Codes=list(codes))
        return self._send("PostCodes", body, callback)

    def get_payoffs(self, callback=None) -> AsyncResult:
        error = _check_callback("getPayoffs", callback)
        if error:
            return self._invalid(error, callback)
        return self._send("GetPayoffs", self._request_body("GetPayoffs"), callback)

    def post_payoffs(self, payoffs: list, callback=None) -> AsyncResult:
        error = _check_callback("postPayoffs", callback) or _check_batch(
            "postPayoffs", "payoffs", payoffs
        )
        if error:
            return self._invalid(error, callback)
        body = self._request_body("PostPayoffs", Payoffs=list(payoffs))
        return self._send("PostPayoffs", body, callback)

    def hello_world(self, callback=None) -> AsyncResult:
        """For testing connectivity and the service key, primarily."""
        error = _check_callback("helloWorld", callback)
        if error:
            return self._invalid(error, callback)
        return self._send("HelloWorld", self._request_body("HelloWorld"), callback)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for all outstanding exchanges to finish."""
        return self._exchanges.join(timeout=timeout)

    def _request_body(self, operation: str, **kw) -> dict:
        body = {
            "Operation": operation,
            "ServiceKey": self.service_key,
            "ProjectCode": self.project_code,
            "AccessCode": "",
            "ExitCode": "",
            "Bonus": 0,
            "Payoffs": [],
            "Codes": [],
        }
        body.update(kw)
        return body

    def _known(self, access_code):
        if access_code in self.registry:
            return True
        logger.warning(
            "Access code %s is not in the local registry; "
            "only the remote service is notified.",
            access_code,
        )
        return False

    def _invalid(self, message, callback=None):
        logger.error(message)
        result = AsyncResult()
        if callable(callback):
            _link(result, callback)
        result.set_exception(ValidationError(message))
        return result

    def _send(self, operation, body, callback=None):
        result = AsyncResult()
        _link(result, callback)
        self._exchanges.spawn(self._exchange, operation, body, result)
        return result

    def _exchange(self, operation, body, result):
        try:
            response = self._req(operation, body)
        except TransportError as err:
            result.set_exception(err)
        else:
            result.set(response)

    def _fetch_codes(self, result):
        outcome = None
        try:
            response = self._load_codes()
            codes = _codes_from_body(response)
            self.registry.import_batch(codes)
            outcome = response
        except DescilServiceException as err:
            outcome = err
        except Exception as err:
            logger.exception("GetCodes failed")
            outcome = TransportError("GetCodes request failed: {}".format(err))
            outcome.__cause__ = err
        finally:
            self._fetch = None
            waiters, self._fetch_waiters = self._fetch_waiters, []

        if isinstance(outcome, Exception):
            result.set_exception(outcome)
            for waiter in waiters:
                waiter.set_exception(outcome)
            return

        result.set(outcome)
        for waiter in waiters:
            waiter.set(
                ServiceResponse(
                    outcome.operation,
                    body=outcome.body,
                    status_code=outcome.status_code,
                    new_request=False,
                )
            )

    def _load_codes(self):
        if self.codes_file:
            logger.info(f"Reading codes from local file {self.codes_file}")
            try:
                with open(self.codes_file, "rt", encoding="utf-8") as source_file:
                    body = json.load(source_file)
            except (OSError, ValueError) as err:
                raise TransportError(
                    f"Failed to read codes from {self.codes_file}: {err}"
                ) from err
            if isinstance(body, list):
                body = {"Codes": body}
            return ServiceResponse("GetCodes", body=body)
        return self._req("GetCodes", self._request_body("GetCodes"))

    def _req(self, operation: str, body: dict) -> ServiceResponse:
        """Runs the actual request/response cycle:
        * Logs the request, with the service key masked
        * POSTs the JSON body to the service URI
        * Parses the response and turns any failure into a TransportError
        """
        summary = {
            "URI": self.uri,
            "body": dict(body, ServiceKey=self.service_key_fragment),
        }
        logger.info(f"DeSciL request: {json.dumps(summary)}")
        try:
            response = requests.post(self.uri, json=body, timeout=self.timeout)
        except requests.exceptions.RequestException as err:
            logger.error(f"DeSciL {operation} request failed: {err}")
            raise TransportError(f"{operation} request failed: {err}") from err

        logger.info(f"Response code {response.status_code}")
        try:
            parsed = response.json()
        except requests.exceptions.JSONDecodeError as err:
            error = TransportError(
                "Failed to parse the following JSON response from DeSciL: "
                f"{err.doc}",
                status_code=response.status_code,
            )
            logger.error(str(error))
            raise error from err

        if not response.ok:
            error = {
                "operation": operation,
                "key": self.service_key_fragment,
                "URI": self.uri,
                "status": response.status_code,
                "response": parsed,
            }
            logger.error(f"DeSciL error: {json.dumps(error)}")
            raise TransportError(
                json.dumps(error), status_code=response.status_code, body=parsed
            )

        logger.info(f"Response body {parsed}")
        return ServiceResponse(operation, body=parsed, status_code=response.status_code)


class OfflineDescilService(DescilService):
    """Works from a local codes file and, instead of making requests, writes
    them to the log.

    Local state is mirrored exactly as with :class:`DescilService`.
    """

    requires_uri = False

    def _req(self, operation: str, body: dict) -> ServiceResponse:
        """Does NOT make any requests but instead writes to the log."""
        logger.info(
            f'Offline DeSciL request: operation="{operation}", '
            f"body={dict(body, ServiceKey=self.service_key_fragment)}"
        )
        response = ServiceResponse(operation, body={})
        logger.info(f"Offline DeSciL response: {response}")
        return response


def descil_service_from_config(config=None, registry=None, strict=False):
    """Build a service from the layered configuration.

    Raises ConfigurationError when the key, the project code, or both the
    URI and the codes file are missing.
    """
    if config is None:
        config = get_config()
    if not config.ready:
        config.load(strict=strict)
    settings = ServiceSettings.from_config(config)
    service_class = OfflineDescilService if settings.offline else DescilService
    return service_class.from_settings(settings, registry=registry)


def _link(result, callback):
    if callback is not None:
        result.rawlink(callback)


def _check_callback(operation, callback):
    if callback is not None and not callable(callback):
        return f"descil.{operation}: callback must be callable or None."


def _check_strings(operation, **kw):
    for name, value in kw.items():
        if not isinstance(value, str) or not value:
            return f"descil.{operation}: {name} must be a non-empty string."


def _check_bonus(operation, bonus):
    if isinstance(bonus, bool) or not isinstance(bonus, Number) or bonus < 0:
        return f"descil.{operation}: bonus must be a non-negative number."


def _check_batch(operation, name, batch):
    if not isinstance(batch, (list, tuple)) or not all(
        isinstance(entry, Mapping) for entry in batch
    ):
        return f"descil.{operation}: {name} must be a list of objects."


def _codes_from_body(response):
    body = response.body
    codes = body.get("Codes") if isinstance(body, Mapping) else None
    if not isinstance(codes, list) or not all(
        isinstance(entry, Mapping) for entry in codes
    ):
        raise TransportError(
            "GetCodes response does not contain a list of codes.",
            status_code=response.status_code,
            body=body,
        )
    return codes


def _mask(service_key):
    """Keep the ends of a long key for log lines; hide short keys entirely."""
    if len(service_key) <= 6:
        return "***"
    return f"{service_key[:3]}...{service_key[-3:]}"
