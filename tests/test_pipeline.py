import pytest

from accesslog_metrics.errors import BuildError, ParseError
from accesslog_metrics.line_parser import LogParser
from accesslog_metrics.pipeline import (
    DURATION,
    ExtractorRequest,
    FilterRequest,
    PassthroughTransform,
    PipelineBuilder,
    RegexPredicate,
    RegexTransform,
    ResponseBodySizeTransform,
    DurationTransform,
    UserTransform,
)

FORMAT = (
    '$host $remote_addr - $remote_user [$time_local] "$request" $status '
    '$request_time $body_bytes_sent "$http_referer" "$http_user_agent"'
)


def test_auto_extractors_for_known_fields():
    config = PipelineBuilder(LogParser.from_format(FORMAT)).build()
    assert config.labels == ("vhost", "user", "status")
    assert [e.field_index for e in config.extractors] == [0, 2, 5, 6, 7]
    assert config.filters == ()


def test_no_auto_extractors_without_known_fields():
    config = PipelineBuilder(LogParser.from_format("$remote_addr $time_local")).build()
    assert config.labels == ()
    assert config.extractors == ()


def test_label_deduplication():
    builder = PipelineBuilder(LogParser.from_format("$status $request"))
    assert builder.label("status") == 0
    assert builder.label("method") == 1
    assert builder.label("status") == 0
    assert builder.labels == ["status", "method"]


def test_user_label_reuses_existing_slot():
    builder = PipelineBuilder(LogParser.from_format("$status $request"))
    builder.add_extractor("status", "request", PassthroughTransform())
    assert builder.build().labels == ("status",)


def test_unknown_field_is_build_error():
    builder = PipelineBuilder(LogParser.from_format("$status $request"))
    with pytest.raises(BuildError, match="No field 'nope'"):
        builder.add_filter("nope", RegexPredicate("x"))
    with pytest.raises(BuildError, match="No field 'nope'"):
        builder.add_extractor("x", "nope", PassthroughTransform())


def test_duplicate_field_resolves_to_first_occurrence():
    builder = PipelineBuilder(LogParser.from_format("$remote_addr $request $remote_addr"))
    builder.add_filter("remote_addr", RegexPredicate("^10\\."))
    assert builder.build().filters[0].field_index == 0


def test_rules_sorted_by_field_and_stable():
    builder = PipelineBuilder(LogParser.from_format("$a $b $c"))
    first = RegexPredicate("1")
    second = RegexPredicate("2")
    builder.add_filter("c", first)
    builder.add_filter("a", RegexPredicate("0"))
    builder.add_filter("c", second)
    filters = builder.build().filters
    assert [f.field_index for f in filters] == [0, 2, 2]
    assert filters[1].predicate is first
    assert filters[2].predicate is second


def test_label_transform_requires_label():
    builder = PipelineBuilder(LogParser.from_format("$a $b"))
    with pytest.raises(BuildError, match="needs a target label"):
        builder.add_extractor(None, "a", PassthroughTransform())
    with pytest.raises(BuildError, match="doesn't produce a label"):
        builder.add_extractor("x", "a", DurationTransform())


def test_requests_resolve_to_transforms():
    builder = PipelineBuilder(LogParser.from_format("$request $upstream_time"))
    builder.add_filter_request(FilterRequest(field="request", pattern="^GET "))
    builder.add_extractor_request(ExtractorRequest(field="upstream_time", kind="duration"))
    builder.add_extractor_request(ExtractorRequest(
        field="request", label="method", kind="regex", pattern=r"^(\w+) .*$", template="$1",
    ))
    config = builder.build()
    assert config.labels == ("method",)
    assert config.extractors[0].transform.output == "label"
    assert config.extractors[1].transform.output == DURATION


def test_unsupported_kinds_are_build_errors():
    builder = PipelineBuilder(LogParser.from_format("$a $b"))
    with pytest.raises(BuildError, match="Unsupported transform 'geoip'"):
        builder.add_extractor_request(ExtractorRequest(field="a", label="x", kind="geoip"))
    with pytest.raises(BuildError, match="Unsupported filter 'glob'"):
        builder.add_filter_request(FilterRequest(field="a", kind="glob", pattern="*"))


def test_regex_requests_need_pattern():
    builder = PipelineBuilder(LogParser.from_format("$a $b"))
    with pytest.raises(BuildError, match="needs a pattern"):
        builder.add_filter_request(FilterRequest(field="a"))
    with pytest.raises(BuildError, match="needs a pattern and a template"):
        builder.add_extractor_request(ExtractorRequest(field="a", label="x", kind="regex", pattern="."))


def test_invalid_regex_is_build_error():
    with pytest.raises(BuildError, match="Invalid regex"):
        RegexPredicate("(")
    with pytest.raises(BuildError, match="Invalid regex"):
        RegexTransform("(", "x")


def test_template_with_unknown_group_is_build_error():
    with pytest.raises(BuildError, match="unknown group '2'"):
        RegexTransform(r"^(\w+)$", "$2")
    with pytest.raises(BuildError, match="unknown group 'name'"):
        RegexTransform(r"^(\w+)$", "${name}")


def test_user_transform():
    assert UserTransform()("-") == "no"
    assert UserTransform()("person") == "yes"


def test_duration_transform():
    assert DurationTransform()("0.092") == pytest.approx(0.092)
    with pytest.raises(ParseError, match="Invalid duration"):
        DurationTransform()("abc")
    with pytest.raises(ParseError, match="Invalid duration"):
        DurationTransform()("-")


def test_response_body_size_transform():
    assert ResponseBodySizeTransform()("263") == 263
    for bad in ("-1", "1.5", "", "12a", "+3"):
        with pytest.raises(ParseError, match="Invalid number of bytes"):
            ResponseBodySizeTransform()(bad)


def test_regex_transform_templates():
    assert RegexTransform(r"^.*/api/(v\d+)/.*$", "$1")("GET /api/v4/pets/1 HTTP/1.1") == "v4"
    assert RegexTransform(r"^.*/api/(?P<ver>v\d+)/.*$", "api-${ver}")("GET /api/v2/x") == "api-v2"
    assert RegexTransform(r"^.*/api/(v\d+)/.*$", r"\1")("GET /api/v3/x") == "v3"


def test_regex_transform_no_match_keeps_value():
    assert RegexTransform(r"^.*/api/(v\d+)/.*$", "$1")("GET /static/x") == "GET /static/x"


def test_regex_predicate_searches():
    assert RegexPredicate("^200$")("200")
    assert not RegexPredicate("^200$")("201")
    assert RegexPredicate("pets")("GET /api/v4/pets/1")


def test_regex_transform_bare_group_name():
    transform = RegexTransform(r"^.*/api/(?P<ver>v\d+)/.*$", "$ver")
    assert transform("GET /api/v4/pets/1 HTTP/1.1") == "v4"
    with pytest.raises(BuildError, match="unknown group 'nope'"):
        RegexTransform(r"^(?P<ver>v\d+)$", "$nope")


@pytest.mark.parametrize("value,expected", [
    ("0.092", 0.092),
    ("2", 2.0),
    (".5", 0.5),
    ("1e-3", 0.001),
    ("+1.5", 1.5),
])
def test_duration_transform_accepts_plain_numbers(value, expected):
    assert DurationTransform()(value) == pytest.approx(expected)


@pytest.mark.parametrize("value", ["1_000", "\t0.1", "0.1 ", "", ".", "0x10", "١٢"])
def test_duration_transform_is_strict(value):
    with pytest.raises(ParseError, match="Invalid duration"):
        DurationTransform()(value)
