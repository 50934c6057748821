
class AccessLogError(Exception):
    """Base class for errors raised while compiling, building or parsing."""


class CompileError(AccessLogError):
    """The log_format description is malformed."""


class BuildError(AccessLogError):
    """A filter or extractor can't be attached to the pipeline."""


class ParseError(AccessLogError):
    """A log line doesn't match the format, or a value can't be converted."""
