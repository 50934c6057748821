from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from accesslog_metrics.pipeline import DURATION, LABEL, PipelineConfig

logger = logging.getLogger(__name__)

UNKNOWN = "unk"


@dataclass(frozen=True)
class Observation:
    """A line that passed every filter: label values plus optional measurements."""
    labels: Tuple[str, ...]
    duration: Optional[float] = None
    response_size: Optional[int] = None


class LineProcessor:
    def __init__(self, config: PipelineConfig):
        self.config = config

    @property
    def labels(self) -> Tuple[str, ...]:
        return self.config.labels

    def process(self, line: str) -> Optional[Observation]:
        """
        Parse one line and run the pipeline over it.

        Returns None if a filter rejected the line. Raises ParseError if the
        line doesn't match the format or an extractor can't convert a value.
        """
        config = self.config
        values = config.parser.parse(line)
        filters = config.filters
        extractors = config.extractors

        label_values = [UNKNOWN] * len(config.labels)
        duration: Optional[float] = None
        response_size: Optional[int] = None

        filter_index = 0
        extractor_index = 0
        for field_index, (field, value) in enumerate(values):
            while filter_index < len(filters) and filters[filter_index].field_index == field_index:
                if not filters[filter_index].predicate(value):
                    logger.debug("Skipping because of filter on %s", field)
                    return None
                filter_index += 1

            while extractor_index < len(extractors) and extractors[extractor_index].field_index == field_index:
                extractor = extractors[extractor_index]
                result = extractor.transform(value)
                if extractor.transform.output == LABEL:
                    label_values[extractor.label_index] = result
                elif extractor.transform.output == DURATION:
                    duration = result
                else:
                    response_size = result
                extractor_index += 1

        return Observation(labels=tuple(label_values), duration=duration, response_size=response_size)
