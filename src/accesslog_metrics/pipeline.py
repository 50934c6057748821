from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from operator import attrgetter
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel

from accesslog_metrics.errors import BuildError, ParseError
from accesslog_metrics.line_parser import LogParser

logger = logging.getLogger(__name__)

# Where an extractor's result goes
LABEL = "label"
DURATION = "duration"
RESPONSE_SIZE = "response_size"


# ----------------------------
# Requests (declarative input)
# ----------------------------
class FilterRequest(BaseModel):
    field: str
    kind: str = "regex"
    pattern: Optional[str] = None


class ExtractorRequest(BaseModel):
    field: str
    label: Optional[str] = None
    kind: str = "passthrough"
    pattern: Optional[str] = None
    template: Optional[str] = None


# ----------------------------
# Filter predicates
# ----------------------------
class RegexPredicate:
    """Keep lines where the pattern is found anywhere in the field's value."""

    def __init__(self, pattern: str):
        try:
            self.regex = re.compile(pattern)
        except re.error as e:
            raise BuildError(f"Invalid regex {pattern!r}: {e}") from e

    def __call__(self, value: str) -> bool:
        return self.regex.search(value) is not None

    def __repr__(self) -> str:
        return f"RegexPredicate({self.regex.pattern!r})"


# ----------------------------
# Extractor transforms
# ----------------------------
class Transform:
    output = LABEL

    def __call__(self, value: str):
        raise NotImplementedError


class UserTransform(Transform):
    def __call__(self, value: str) -> str:
        return "yes" if value != "-" else "no"


class PassthroughTransform(Transform):
    def __call__(self, value: str) -> str:
        return value


_DURATION_RE = re.compile(
    r"[+-]?(?:\d+\.?\d*|\.\d+)(?:e[+-]?\d+)?|[+-]?(?:inf|infinity|nan)",
    re.ASCII | re.IGNORECASE,
)


class DurationTransform(Transform):
    output = DURATION

    def __call__(self, value: str) -> float:
        # Plain decimal or exponent notation: no underscores, no padding
        if _DURATION_RE.fullmatch(value) is None:
            raise ParseError(f"Invalid duration: {value!r}")
        return float(value)


class ResponseBodySizeTransform(Transform):
    output = RESPONSE_SIZE

    def __call__(self, value: str) -> int:
        if not (value.isascii() and value.isdigit()):
            raise ParseError(f"Invalid number of bytes: {value!r}")
        return int(value)


_TEMPLATE_GROUP_RE = re.compile(r"\$(?:(\d+)|\{(\w+)\}|([A-Za-z_]\w*))")
_TEMPLATE_REF_RE = re.compile(r"\\g<(\w+)>|\\(\d+)")


def _convert_template(template: str) -> str:
    """Accept $1 / $name / ${name} group references alongside Python's \\1 / \\g<name>."""
    return _TEMPLATE_GROUP_RE.sub(lambda m: "\\g<%s>" % next(g for g in m.groups() if g), template)


class RegexTransform(Transform):
    """Rewrite the value with a capture-group template; non-matching values pass through."""

    def __init__(self, pattern: str, template: str):
        try:
            self.regex = re.compile(pattern)
        except re.error as e:
            raise BuildError(f"Invalid regex {pattern!r}: {e}") from e
        self.template = _convert_template(template)
        for ref in _TEMPLATE_REF_RE.finditer(self.template):
            group = ref.group(1) or ref.group(2)
            known = int(group) <= self.regex.groups if group.isdigit() else group in self.regex.groupindex
            if not known:
                raise BuildError(f"Template {template!r} refers to unknown group {group!r}")

    def __call__(self, value: str) -> str:
        try:
            return self.regex.sub(self.template, value, count=1)
        except (re.error, IndexError) as e:
            raise ParseError(f"Can't apply template to {value!r}: {e}") from e


def _make_regex_transform(req: ExtractorRequest) -> Transform:
    if req.pattern is None or req.template is None:
        raise BuildError(f"regex extractor on {req.field!r} needs a pattern and a template")
    return RegexTransform(req.pattern, req.template)


TRANSFORMS: Dict[str, Callable[[ExtractorRequest], Transform]] = {
    "user": lambda req: UserTransform(),
    "status": lambda req: PassthroughTransform(),
    "host": lambda req: PassthroughTransform(),
    "passthrough": lambda req: PassthroughTransform(),
    "duration": lambda req: DurationTransform(),
    "response_body_size": lambda req: ResponseBodySizeTransform(),
    "regex": _make_regex_transform,
}


def _make_regex_predicate(req: FilterRequest) -> Callable[[str], bool]:
    if req.pattern is None:
        raise BuildError(f"regex filter on {req.field!r} needs a pattern")
    return RegexPredicate(req.pattern)


PREDICATES: Dict[str, Callable[[FilterRequest], Callable[[str], bool]]] = {
    "regex": _make_regex_predicate,
}


def resolve_transform(req: ExtractorRequest) -> Transform:
    factory = TRANSFORMS.get(req.kind)
    if factory is None:
        raise BuildError(f"Unsupported transform {req.kind!r} for field {req.field!r}")
    return factory(req)


def resolve_predicate(req: FilterRequest) -> Callable[[str], bool]:
    factory = PREDICATES.get(req.kind)
    if factory is None:
        raise BuildError(f"Unsupported filter {req.kind!r} for field {req.field!r}")
    return factory(req)


# ----------------------------
# Pipeline
# ----------------------------
@dataclass(frozen=True)
class Filter:
    field_index: int
    predicate: Callable[[str], bool]


@dataclass(frozen=True)
class Extractor:
    field_index: int
    label_index: Optional[int]
    transform: Transform


@dataclass(frozen=True)
class PipelineConfig:
    parser: LogParser
    filters: Tuple[Filter, ...]
    extractors: Tuple[Extractor, ...]
    labels: Tuple[str, ...]


# field name -> (label, transform) registered automatically when present
AUTO_EXTRACTORS: Dict[str, Tuple[Optional[str], Callable[[], Transform]]] = {
    "remote_user": ("user", UserTransform),
    "status": ("status", PassthroughTransform),
    "request_time": (None, DurationTransform),
    "host": ("vhost", PassthroughTransform),
    "body_bytes_sent": (None, ResponseBodySizeTransform),
}


class PipelineBuilder:
    def __init__(self, parser: LogParser):
        self.parser = parser
        self.labels: List[str] = []
        self.filters: List[Filter] = []
        self.extractors: List[Extractor] = []

        for field_index, field in enumerate(parser.fields):
            auto = AUTO_EXTRACTORS.get(field)
            if auto is None:
                continue
            label, transform = auto
            self._add(field_index, label, transform())

    def label(self, name: str) -> int:
        """Index of the label, adding it if it's not there yet."""
        try:
            return self.labels.index(name)
        except ValueError:
            self.labels.append(name)
            return len(self.labels) - 1

    def field_index(self, field: str) -> int:
        # Duplicate field names resolve to the first occurrence
        try:
            return self.parser.fields.index(field)
        except ValueError:
            raise BuildError(f"No field {field!r} in the log format") from None

    def add_filter(self, field: str, predicate: Callable[[str], bool]) -> None:
        self.filters.append(Filter(field_index=self.field_index(field), predicate=predicate))

    def add_extractor(self, label: Optional[str], field: str, transform: Transform) -> None:
        field_index = self.field_index(field)
        if transform.output == LABEL and label is None:
            raise BuildError(f"Extractor on {field!r} needs a target label")
        if transform.output != LABEL and label is not None:
            raise BuildError(f"Extractor on {field!r} doesn't produce a label value")
        self._add(field_index, label, transform)

    def add_filter_request(self, req: FilterRequest) -> None:
        self.add_filter(req.field, resolve_predicate(req))

    def add_extractor_request(self, req: ExtractorRequest) -> None:
        self.add_extractor(req.label, req.field, resolve_transform(req))

    def _add(self, field_index: int, label: Optional[str], transform: Transform) -> None:
        label_index = self.label(label) if label is not None else None
        self.extractors.append(Extractor(field_index=field_index, label_index=label_index, transform=transform))

    def build(self) -> PipelineConfig:
        # sorted() is stable, rules on the same field keep registration order
        key = attrgetter("field_index")
        config = PipelineConfig(
            parser=self.parser,
            filters=tuple(sorted(self.filters, key=key)),
            extractors=tuple(sorted(self.extractors, key=key)),
            labels=tuple(self.labels),
        )
        logger.debug("Pipeline: labels=%s filters=%d extractors=%d",
                     config.labels, len(config.filters), len(config.extractors))
        return config
