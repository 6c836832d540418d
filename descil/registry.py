"""In-memory registry of access codes fetched from the DeSciL service.

Records are keyed by access code. They are created in bulk when codes are
fetched (or read from a local file) and then mutated in place as workers
check in, check out or drop out.
"""

import io
import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, fields
from typing import Optional, Union

from descil.exceptions import InvalidStateError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def _camel(name):
    head, *tail = name.split("_")
    return head + "".join(part.title() for part in tail)


def _pascal(name):
    return "".join(part.title() for part in name.split("_"))


@dataclass
class AccessCodeRecord:
    """One access code and the local status of the worker session it opens.

    Args:
        access_code (str): The code handed to the worker; unique in a registry
        used (bool): Whether the code has been used to enter a session
        usage (int): How many sessions currently use the code, None if never counted
        checked_in (bool): The worker started the task
        checked_out (bool): The worker finished the task
        dropped_out (bool): The worker abandoned the task
        valid (bool): Whether the code is accepted at all
        bonus (float): Bonus paid on check-out or drop-out
        exit_code (str): Code handed to the worker when leaving the task
        extra (dict): Any other fields received from the service
    """

    access_code: str
    used: bool = False
    usage: Optional[int] = None
    checked_in: bool = False
    checked_out: bool = False
    dropped_out: bool = False
    valid: bool = True
    bonus: Union[int, float] = 0
    exit_code: Optional[str] = None
    extra: dict = field(default_factory=dict)

    @classmethod
    def field_names(cls):
        """Map every accepted spelling of a field to the attribute name.

        The service uses ``PascalCase`` names (``AccessCode``), older local
        files use ``camelCase`` (``checkedIn``).
        """
        names = {}
        for f in fields(cls):
            if f.name == "extra":
                continue
            names[f.name] = f.name
            names[_camel(f.name)] = f.name
            names[_pascal(f.name)] = f.name
        return names

    @classmethod
    def split_mapping(cls, mapping):
        """Return ``(known, extra)`` dicts for the given field mapping."""
        names = cls.field_names()
        known = {}
        extra = {}
        for key, value in mapping.items():
            if key == "extra" and isinstance(value, Mapping):
                extra.update(value)
            elif key in names:
                known[names[key]] = value
            else:
                extra[key] = value
        _check_usage(known.get("usage"))
        return known, extra

    @classmethod
    def from_mapping(cls, mapping):
        known, extra = cls.split_mapping(mapping)
        access_code = known.pop("access_code", None)
        if not isinstance(access_code, str) or not access_code:
            raise ValidationError(
                "descil: record has no access code: {!r}".format(mapping)
            )
        return cls(access_code=access_code, extra=extra, **known)

    def merge(self, mapping):
        known, extra = self.split_mapping(mapping)
        known.pop("access_code", None)
        for name, value in known.items():
            setattr(self, name, value)
        self.extra.update(extra)
        return self

    def as_dict(self):
        d = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "extra"}
        d.update(self.extra)
        return d

    def exit_record(self):
        """The check-out/drop-out entry sent with a PostCodes request."""
        return {
            "AccessCode": self.access_code,
            "ExitCode": self.exit_code or "",
            "Bonus": self.bonus or 0,
        }


class CodeRegistry(object):
    """Indexed collection of :class:`AccessCodeRecord` keyed by access code.

    A registry belongs to the service that fills it; there is no shared
    module-level instance.
    """

    def __init__(self, records=None):
        self._records = {}
        if records is not None:
            self.import_batch(records)

    def __len__(self):
        return len(self._records)

    def __contains__(self, access_code):
        return access_code in self._records

    def __iter__(self):
        return iter(list(self._records.values()))

    def __repr__(self):
        return "<CodeRegistry with {} codes>".format(len(self))

    def codes(self):
        return list(self._records)

    def clear(self):
        self._records = {}

    def exists(self, access_code):
        """Return the record with the given access code, or None."""
        _check_code(access_code, "exists")
        if not self._records:
            logger.warning("descil.exists: empty code database.")
            return None
        return self._records.get(access_code)

    def get(self, access_code):
        record = self.exists(access_code)
        if record is None:
            raise NotFoundError(
                "descil: no object found with accesscode: {}".format(access_code)
            )
        return record

    def is_used(self, access_code):
        return self.get(access_code).used

    def is_valid(self, access_code):
        return self.get(access_code).valid

    def mark_used(self, access_code):
        record = self.get(access_code)
        record.used = True
        return record

    def mark_unused(self, access_code):
        record = self.get(access_code)
        record.used = False
        return record

    def mark_valid(self, access_code):
        record = self.get(access_code)
        record.valid = True
        return record

    def mark_invalid(self, access_code):
        record = self.get(access_code)
        record.valid = False
        return record

    def increment_usage(self, access_code):
        record = self.get(access_code)
        record.usage = (record.usage or 0) + 1
        return record

    def decrement_usage(self, access_code):
        """Decrement the usage counter; it is never allowed to go negative."""
        record = self.get(access_code)
        if not record.usage:
            raise InvalidStateError(
                "descil: usage cannot be negative. Accesscode: {}".format(access_code)
            )
        record.usage -= 1
        return record

    def mark_checked_in(self, access_code):
        record = self.get(access_code)
        record.checked_in = True
        return record

    def mark_checked_out(self, access_code, exit_code, bonus=0):
        record = self.get(access_code)
        record.checked_out = True
        record.exit_code = exit_code
        record.bonus = bonus
        return record

    def mark_dropped_out(self, access_code, exit_code, bonus=0):
        record = self.get(access_code)
        record.dropped_out = True
        record.exit_code = exit_code
        record.bonus = bonus
        return record

    def update(self, access_code, update):
        """Merge a mapping of fields into an existing record.

        Both attribute names and service field names are accepted; fields
        the record does not know are kept in ``record.extra``.
        """
        if not isinstance(update, Mapping):
            raise ValidationError("descil.update: update must be a mapping.")
        return self.get(access_code).merge(update)

    def import_batch(self, records):
        """Merge a batch of records into the registry, keyed by access code.

        Incoming fields overwrite the stored ones for codes that are already
        present. Returns the number of records merged.
        """
        if isinstance(records, (str, bytes, Mapping)) or not isinstance(
            records, Iterable
        ):
            raise ValidationError(
                "descil.import_batch: records must be a list of code records."
            )
        count = 0
        for entry in records:
            if isinstance(entry, AccessCodeRecord):
                entry = dict(entry.as_dict())
            if not isinstance(entry, Mapping):
                raise ValidationError(
                    "descil.import_batch: invalid code record {!r}".format(entry)
                )
            try:
                incoming = AccessCodeRecord.from_mapping(entry)
            except ValidationError as e:
                logger.warning("Skipping code record: %s", e)
                continue
            existing = self._records.get(incoming.access_code)
            if existing is None:
                self._records[incoming.access_code] = incoming
            else:
                existing.merge(entry)
            count += 1
        logger.info("Imported %d codes (%d in registry).", count, len(self))
        return count

    def load_file(self, filename):
        """Import codes from a local JSON file.

        The file holds either a list of records or an object with a ``Codes``
        list, the same shape as a GetCodes response.
        """
        with io.open(filename, "rt", encoding="utf-8") as source_file:
            data = json.load(source_file)
        if isinstance(data, Mapping):
            data = data.get("Codes", [])
        return self.import_batch(data)

    def exit_codes(self):
        """Check-out and drop-out results, ready for a PostCodes request."""
        return [
            record.exit_record()
            for record in self
            if record.checked_out or record.dropped_out
        ]


def _check_code(access_code, operation):
    if not isinstance(access_code, str) or not access_code:
        raise ValidationError(
            "descil.{}: accesscode must be a non-empty string.".format(operation)
        )


def _check_usage(usage):
    if usage is None:
        return
    if isinstance(usage, bool) or not isinstance(usage, int) or usage < 0:
        raise ValidationError(
            "descil: usage must be a non-negative integer, got {!r}".format(usage)
        )
