#!/usr/bin/env python3

"""
whisper_migrate.py is used to convert a tree of Graphite whisper
archives (`*.wsp` files) into InfluxDB line protocol files that
can be imported with `influx -import`.

Each whisper file is matched against an ordered list of rules (see
`rules_example.json`). A rule pattern such as `stats.{{ host }}.load`
captures parts of the series path, and those captured values are
substituted into the measurement, field and tag templates of the rule.
The first rule that matches wins.

Every sub-archive of a whisper file has its own resolution (seconds per
point). Points are written to one output file per resolution, shared by
all series, so that each file can be imported into its own retention
policy. Each output file starts with a line protocol context header
naming the target database and retention policy.

This script can be run from the command line by giving it the path
to a YAML configuration file (see `whisper_migrate_conf_example.yaml`)
and/or command line flags, or you can import this file as a module and
drive `BucketRegistry` and `ExportPipeline` yourself.

"""

import argparse
import gzip
import json
import math
import os
import re
import struct
import sys
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import whisper
import yaml

MAX_TIMESTAMP = 2**32 - 1
DEFAULT_FIELD = "value"
DEFAULT_DATABASE = "graphite"
DEFAULT_FILE_NAME_FORMAT = "{RATE}-{RETENTION}.txt"

# {{ name }} with any whitespace around the name
WILDCARD_PATTERN = re.compile(r"\{\{\s*([^{}\s]+)\s*\}\}")
WILDCARD_CAPTURE = "[^.]+"


class MigrationError(Exception):
    """Base error for the whisper migration."""


class ConfigError(MigrationError):
    """Configuration or rules file is missing, unreadable or malformed."""


class EnumerationError(MigrationError):
    """The whisper directory could not be listed."""


class NoMatchError(MigrationError):
    """A series path did not match any rule."""


class TemplateError(MigrationError):
    """A captured value cannot be substituted safely into a template."""


class ArchiveOpenError(MigrationError):
    """A whisper file could not be opened."""


class ArchiveDecodeError(MigrationError):
    """The points of a sub-archive could not be decoded."""


class WriteError(MigrationError):
    """An output file could not be created or written to."""


class MatchState(Enum):
    UNRESOLVED = "unresolved"
    MATCHED = "matched"
    UNMATCHED = "unmatched"
    EXPORTED = "exported"
    EXPORT_FAILED = "export_failed"


@dataclass(frozen=True)
class Rule:
    """One entry of the rules file."""

    pattern: str
    measurement: str = ""
    field: str = ""
    tags: Tuple[Tuple[str, str], ...] = ()


@dataclass(frozen=True)
class CompiledRule:
    """
    A rule with its pattern compiled once at load time.

    `wildcards` holds the wildcard names in order of first appearance
    in the pattern and `tokens` the regex finding each of them in a
    template, index for index.
    """

    rule: Rule
    regex: re.Pattern[str]
    wildcards: Tuple[str, ...]
    tokens: Tuple[re.Pattern[str], ...]


@dataclass
class SeriesDescriptor:
    """A discovered whisper file and the metadata resolved for it."""

    source_path: str
    normalized_path: str
    rule: Optional[CompiledRule] = None
    captured: Tuple[str, ...] = ()
    measurement: str = ""
    field: str = ""
    tags: str = ""
    state: MatchState = MatchState.UNRESOLVED


@dataclass(frozen=True)
class Sample:
    """A single whisper point."""

    timestamp: int
    value: float


@dataclass(frozen=True)
class ArchiveInfo:
    """Header entry of one sub-archive of a whisper file."""

    index: int
    seconds_per_point: int
    points: int
    offset: int


@dataclass
class ExportSummary:
    exported: int = 0
    failed: int = 0
    lines: int = 0


@dataclass
class ExportSettings:
    """Settings of a migration run, merged from YAML config and flags."""

    wsp_path: str
    export_path: str
    rules: List[Rule]
    from_timestamp: int = 0
    until_timestamp: int = MAX_TIMESTAMP
    gzipped: bool = False
    export_zeros: bool = False
    scale_by_interval: bool = True
    database: str = DEFAULT_DATABASE
    retentions: List[str] = field(default_factory=list)
    file_name_format: str = DEFAULT_FILE_NAME_FORMAT
    verbose: bool = False


def read_yaml(path: str) -> Any:
    """
    Parse yaml file and return dictionary.

    Parameters
    ----------
    path : str
        The path to the yaml file.

    Returns
    -------
    dict
        The dictionary representation of yaml file.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Can't read config file: '{path}': {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Can't parse yaml file '{path}': {e}") from e


def parse_rules(raw: Any) -> List[Rule]:
    """
    Build the rule list from the decoded content of a rules file.

    Parameters
    ----------
    raw : list
        A list of mappings with a `pattern` key and optional
        `measurement`, `field` and `tags` keys. `tags` is a list
        of `{"tagkey": ..., "tagvalue": ...}` mappings.

    Returns
    -------
    list of Rule
        The rules, in the order they were declared.
    """
    if not isinstance(raw, list):
        raise ConfigError(f"Rules must be a list of rules. Got: {type(raw)}")

    rules = []
    for i, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ConfigError(f"Rule #{i} must be a mapping. Got: {type(entry)}")
        pattern = entry.get("pattern")
        if not isinstance(pattern, str) or not pattern:
            raise ConfigError(f"Rule #{i} has no 'pattern'")

        tags = []
        for tag in entry.get("tags") or []:
            if not isinstance(tag, dict) or "tagkey" not in tag:
                raise ConfigError(f"Rule #{i} has a malformed tag: {tag!r}")
            tags.append((str(tag["tagkey"]), str(tag.get("tagvalue", ""))))

        rules.append(
            Rule(
                pattern=pattern,
                measurement=str(entry.get("measurement") or ""),
                field=str(entry.get("field") or ""),
                tags=tuple(tags),
            )
        )
    return rules


def load_rules(path: str) -> List[Rule]:
    """
    Read the rules file. JSON is expected, `.yaml` and `.yml`
    files are parsed as YAML.
    """
    if path.endswith((".yaml", ".yml")):
        return parse_rules(read_yaml(path))

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except OSError as e:
        raise ConfigError(f"Can't read rules file: '{path}': {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Can't unmarshal rules file json '{path}': {e}") from e
    return parse_rules(raw)


def _parse_timestamp(conf: Dict[str, Any], key: str, default: int) -> int:
    value = conf.get(key)
    if value is None:
        return default
    try:
        timestamp = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{key} must be a timestamp in seconds. Got: {value!r}") from e
    if not 0 <= timestamp <= MAX_TIMESTAMP:
        raise ConfigError(f"{key} must be between 0 and {MAX_TIMESTAMP}. Got: {timestamp}")
    return timestamp


def _parse_flag(conf: Dict[str, Any], key: str, default: bool) -> bool:
    value = conf.get(key)
    if value is None:
        return default
    # yaml gives real booleans for true/false/yes/no, quoted values stay strings
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be true or false. Got: {value!r}")
    return value


def parse_retentions(value: Any) -> List[str]:
    """
    Split the retention names given as a comma separated string
    or a list. Blank names are dropped.

    >>> parse_retentions("autogen, weekly,,")
    ['autogen', 'weekly']
    """
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, list):
        raise ConfigError(f"RETENTIONS must be a string or a list. Got: {type(value)}")
    return [str(name).strip() for name in value if str(name).strip()]


def load_settings(
    conf: Optional[Dict[str, Any]], overrides: Optional[Dict[str, Any]] = None
) -> ExportSettings:
    """
    Merge the YAML configuration with command line overrides.

    Parameters
    ----------
    conf : dict or None
        The parsed YAML configuration (upper-case keys).
    overrides : dict, optional
        Values from the command line, using the same keys. Entries
        set to None are ignored.

    Returns
    -------
    ExportSettings
        The settings of the run.
    """
    if conf is None:
        conf = {}
    if not isinstance(conf, dict):
        raise ConfigError(f"Configuration must be a mapping. Got: {type(conf)}")
    merged = dict(conf)
    merged.update({k: v for k, v in (overrides or {}).items() if v is not None})

    try:
        wsp_path = merged["WSP_PATH"]
    except KeyError as exc:
        raise ConfigError("No WSP_PATH given in the configuration") from exc
    try:
        export_path = merged["EXPORT_PATH"]
    except KeyError as exc:
        raise ConfigError("No EXPORT_PATH given in the configuration") from exc

    if merged.get("RULES_FILE"):
        rules = load_rules(str(merged["RULES_FILE"]))
    elif "RULES" in merged:
        rules = parse_rules(merged["RULES"])
    else:
        raise ConfigError("Configuration must have either RULES_FILE or RULES")

    from_timestamp = _parse_timestamp(merged, "FROM", 0)
    until_timestamp = _parse_timestamp(merged, "UNTIL", MAX_TIMESTAMP)
    if from_timestamp > until_timestamp:
        raise ConfigError(f"FROM ({from_timestamp}) is after UNTIL ({until_timestamp})")

    return ExportSettings(
        wsp_path=str(wsp_path),
        export_path=str(export_path),
        rules=rules,
        from_timestamp=from_timestamp,
        until_timestamp=until_timestamp,
        gzipped=_parse_flag(merged, "GZ", False),
        export_zeros=_parse_flag(merged, "ZEROS", False),
        scale_by_interval=_parse_flag(merged, "SCALE_BY_INTERVAL", True),
        database=str(merged.get("DATABASE") or DEFAULT_DATABASE),
        retentions=parse_retentions(merged.get("RETENTIONS")),
        file_name_format=str(merged.get("FILE_NAME_FORMAT") or DEFAULT_FILE_NAME_FORMAT),
        verbose=_parse_flag(merged, "VERBOSE", False),
    )


def wildcard_token(name: str) -> re.Pattern[str]:
    """Regex finding `{{ name }}` in a template, whatever the spacing."""
    return re.compile(r"\{\{\s*" + re.escape(name) + r"\s*\}\}")


def compile_rule(rule: Rule) -> CompiledRule:
    """
    Compile the pattern of a rule into a regex.

    Literal dots are escaped and each `{{ name }}` wildcard becomes
    a group matching one path segment. A wildcard repeated in the
    pattern must match the same text each time.

    Parameters
    ----------
    rule : Rule
        The rule to compile.

    Returns
    -------
    CompiledRule
        The compiled rule.

    Examples
    --------
    >>> compile_rule(Rule("stats.{{ host }}.load")).wildcards
    ('host',)
    """
    wildcards: List[str] = []
    parts = []
    position = 0
    # Escape the literal text between wildcards, one group per wildcard
    for match in WILDCARD_PATTERN.finditer(rule.pattern):
        parts.append(rule.pattern[position : match.start()].replace(".", r"\."))
        name = match.group(1)
        # Repeated wildcards refer back to their first group
        if name in wildcards:
            parts.append(f"(?P=_wc{wildcards.index(name)})")
        else:
            parts.append(f"(?P<_wc{len(wildcards)}>{WILDCARD_CAPTURE})")
            wildcards.append(name)
        position = match.end()
    parts.append(rule.pattern[position:].replace(".", r"\."))

    try:
        regex = re.compile("".join(parts))
    except re.error as e:
        raise ConfigError(f"Invalid pattern '{rule.pattern}': {e}") from e

    return CompiledRule(
        rule=rule,
        regex=regex,
        wildcards=tuple(wildcards),
        tokens=tuple(wildcard_token(name) for name in wildcards),
    )


def compile_rules(rules: Iterable[Rule]) -> List[CompiledRule]:
    return [compile_rule(rule) for rule in rules]


def normalize_path(source_path: str, root: str = "") -> str:
    """
    Turn a whisper file path into a dotted series name.

    >>> normalize_path("/data/stats/web 1/load.wsp", "/data")
    'stats.web_1.load'
    """
    path = os.path.relpath(source_path, root) if root else source_path
    if path.endswith(".wsp"):
        path = path[: -len(".wsp")]
    path = path.replace(os.sep, ".").replace("/", ".")
    return path.replace(",", "_").replace(" ", "_")


def match_path(
    normalized_path: str, compiled_rules: List[CompiledRule]
) -> Optional[Tuple[int, Tuple[str, ...]]]:
    """
    Find the first rule matching the series path.

    The rule regex may match anywhere in the path, it is not
    anchored to the start or end of the path.

    Returns
    -------
    tuple or None
        `(rule_index, captured_values)`, or None if no rule matches.
    """
    for index, compiled in enumerate(compiled_rules):
        match = compiled.regex.search(normalized_path)
        if match:
            # a wildcard in an optional or alternate group may not take part
            captured = tuple(
                match.group(f"_wc{i}") or ""
                for i in range(len(compiled.wildcards))
            )
            return index, captured
    return None


def resolve_templates(
    compiled: CompiledRule, captured: Tuple[str, ...], normalized_path: str
) -> Tuple[str, str, str]:
    """
    Substitute captured values into the measurement, field and
    tag templates of a rule.

    An empty measurement defaults to the last segment of the series
    path and an empty field to "value". Wildcards are replaced from
    the last one to the first.

    Parameters
    ----------
    compiled : CompiledRule
        The rule that matched.
    captured : tuple of str
        Values captured by the rule, in wildcard order.
    normalized_path : str
        The dotted series path.

    Returns
    -------
    tuple of str
        `(measurement, field, tags)` where tags is either empty or
        a string of `,key=value` pairs.
    """
    rule = compiled.rule
    if len(captured) != len(compiled.wildcards):
        raise TemplateError(
            f"Expected {len(compiled.wildcards)} captured values, got {len(captured)}"
        )
    for value in captured:
        if WILDCARD_PATTERN.search(value):
            raise TemplateError(f"Captured value '{value}' contains a wildcard")

    measurement = rule.measurement
    field = rule.field
    tags = "".join(f",{key}={value}" for key, value in rule.tags)

    # If measurement or field is not defined
    if not measurement:
        measurement = normalized_path.split(".")[-1]
    if not field:
        field = DEFAULT_FIELD

    # Replace "{{ wildcard }}" with matched values, last one first
    for i in range(len(compiled.wildcards) - 1, -1, -1):
        token = compiled.tokens[i]
        value = captured[i]
        measurement = token.sub(lambda _: value, measurement)
        field = token.sub(lambda _: value, field)
        tags = token.sub(lambda _: value, tags)

    return measurement, field, tags


def resolve_series(
    source_path: str, root: str, compiled_rules: List[CompiledRule]
) -> SeriesDescriptor:
    """
    Match a whisper file against the rules and resolve its metadata.

    Raises TemplateError if a captured value cannot be substituted.
    """
    descriptor = SeriesDescriptor(
        source_path=source_path, normalized_path=normalize_path(source_path, root)
    )
    found = match_path(descriptor.normalized_path, compiled_rules)
    if found is None:
        descriptor.state = MatchState.UNMATCHED
        return descriptor

    index, captured = found
    compiled = compiled_rules[index]
    measurement, field, tags = resolve_templates(
        compiled, captured, descriptor.normalized_path
    )
    descriptor.rule = compiled
    descriptor.captured = captured
    descriptor.measurement = measurement
    descriptor.field = field
    descriptor.tags = tags
    descriptor.state = MatchState.MATCHED
    return descriptor


def list_whisper_files(search_dir: str) -> List[str]:
    """
    List every whisper file below search_dir, sorted so that
    series are always processed in the same order.
    """
    if not os.path.isdir(search_dir):
        raise EnumerationError(f"Whisper path is not a directory: '{search_dir}'")

    errors: List[OSError] = []
    file_list = []
    for root, dirs, files in os.walk(search_dir, onerror=errors.append):
        dirs.sort()
        for filename in sorted(files):
            if filename.endswith("wsp"):
                file_list.append(os.path.join(root, filename))
    for error in errors:
        print(f"ERROR: Failed to list '{error.filename}': {error.strerror}")
    return file_list


def list_migrations(
    wsp_path: str, compiled_rules: List[CompiledRule], verbose: bool = False
) -> List[SeriesDescriptor]:
    """
    List the whisper files and resolve measurement, field and tags
    for each of them. Files matching no rule are left out.
    """
    try:
        file_list = list_whisper_files(wsp_path)
    except EnumerationError as e:
        print(f"ERROR: {e}. No series to export.")
        return []

    print("Checking files to export...")

    migrations = []
    for wsp_file in file_list:
        try:
            descriptor = resolve_series(wsp_file, wsp_path, compiled_rules)
        except TemplateError as e:
            print(f"ERROR: Can't resolve templates for '{wsp_file}': {e}. Skipping it.")
            continue

        if descriptor.state is MatchState.MATCHED:
            migrations.append(descriptor)
        elif verbose:
            print(f"File didn't match any config patterns: {wsp_file}")
    return migrations


class WhisperArchive:
    """
    Read-only access to the points of a whisper file.

    The header is parsed by the whisper library, points are read
    straight from each sub-archive in storage order.
    """

    def __init__(self, path: str, fh: Any, header: Dict[str, Any]) -> None:
        self.path = path
        self._fh = fh
        self.archives = [
            ArchiveInfo(
                index=i,
                seconds_per_point=int(archive["secondsPerPoint"]),
                points=int(archive["points"]),
                offset=int(archive["offset"]),
            )
            for i, archive in enumerate(header["archives"])
        ]

    @classmethod
    def open(cls, path: str) -> "WhisperArchive":
        try:
            header = whisper.info(path)
        except whisper.CorruptWhisperFile as e:
            raise ArchiveOpenError(f"Corrupt whisper file '{path}': {e}") from e
        except OSError as e:
            raise ArchiveOpenError(f"Can't open '{path}': {e}") from e
        if header is None:
            raise ArchiveOpenError(f"Can't read whisper header of '{path}'")
        try:
            fh = open(path, "rb")
        except OSError as e:
            raise ArchiveOpenError(f"Can't open '{path}': {e}") from e
        return cls(path, fh, header)

    def dump(self, index: int) -> List[Sample]:
        """Return every point stored in the sub-archive, empty slots included."""
        archive = self.archives[index]
        size = archive.points * whisper.pointSize
        try:
            self._fh.seek(archive.offset)
            data = self._fh.read(size)
        except OSError as e:
            raise ArchiveDecodeError(
                f"Can't read archive {index} of '{self.path}': {e}"
            ) from e
        if len(data) != size:
            raise ArchiveDecodeError(
                f"Archive {index} of '{self.path}' is truncated "
                f"({len(data)} of {size} bytes)"
            )
        return [
            Sample(timestamp=timestamp, value=value)
            for timestamp, value in struct.iter_unpack(whisper.pointFormat, data)
        ]

    def close(self) -> None:
        self._fh.close()

    def __enter__(self) -> "WhisperArchive":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


# Define available placeholder functions
PLACEHOLDER_FUNCTIONS = {
    "lower": str.lower,
    "upper": str.upper,
    "title": str.title,
    "capitalize": str.capitalize,
}


def apply_placeholder_function(value: str, func_spec: str) -> str:
    """
    Apply a function to a placeholder value.

    Parameters
    ----------
    value : str
        The value to transform
    func_spec : str
        Function specification, e.g. "lower", "upper", "replace:_:-"

    Returns
    -------
    str
        Transformed value

    Examples
    --------
    >>> apply_placeholder_function("Autogen", "lower")
    'autogen'
    >>> apply_placeholder_function("one_week", "replace:_:-")
    'one-week'
    """
    if ":" in func_spec:
        func_name, args_str = func_spec.split(":", 1)
        args = args_str.split(":")

        if func_name == "replace":
            if len(args) >= 2:
                old, new = args[0], args[1]
                return value.replace(old, new)
            raise ConfigError(f"replace function requires 2 arguments, got {len(args)}")
        raise ConfigError(f"Unknown function with arguments: {func_name}")

    if func_spec in PLACEHOLDER_FUNCTIONS:
        return PLACEHOLDER_FUNCTIONS[func_spec](value)

    raise ConfigError(f"Unknown placeholder function: {func_spec}")


def substitute_placeholders(template: str, values: Dict[str, str]) -> str:
    """
    Substitute `{KEY}` placeholders, optionally piped through
    functions: `{RETENTION|lower}`. Unknown keys are left as-is.

    >>> substitute_placeholders("{RATE}-{RETENTION|upper}.txt",
    ...                         {"RATE": "60", "RETENTION": "autogen"})
    '60-AUTOGEN.txt'
    """
    pattern = r"\{([^}|]+)(?:\|([^}]+))?\}"

    def replacer(match: Any) -> str:
        key = match.group(1)
        functions = match.group(2)

        if key not in values:
            return str(match.group(0))

        value = values[key]
        if functions:
            for func_spec in functions.split("|"):
                value = apply_placeholder_function(value, func_spec.strip())
        return value

    return re.sub(pattern, replacer, template)


def line_protocol_context(database: str, retention: str) -> str:
    """Header telling `influx -import` where to write the points."""
    context = "# DML\n# CONTEXT-DATABASE: " + database
    context += "\n# CONTEXT-RETENTION-POLICY: " + retention + "\n\n"
    return context


def format_value(value: float) -> str:
    """
    Shortest decimal representation of a float, never using
    exponent notation.

    >>> format_value(324.0)
    '324'
    >>> format_value(1e-05)
    '0.00001'
    """
    text = format(Decimal(repr(float(value))), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def encode_line(
    measurement: str, tags: str, field: str, value: float, timestamp: int
) -> str:
    """Build one line protocol point, without the trailing newline."""
    return f"{measurement}{tags} {field}={format_value(value)} {timestamp}"


def keep_sample(
    sample: Sample, from_timestamp: int, until_timestamp: int, export_zeros: bool
) -> bool:
    """
    Tell whether a point is exported. Zero values are skipped unless
    export_zeros is set, the time range is inclusive at both ends.
    """
    if not export_zeros and sample.value == 0:
        return False
    if sample.timestamp < from_timestamp or sample.timestamp > until_timestamp:
        return False
    return math.isfinite(sample.value)


def scale_value(value: float, seconds_per_point: int, scale_by_interval: bool) -> float:
    if not scale_by_interval:
        return value
    return float(math.ceil(value * seconds_per_point))


class RetentionBucket:
    """An output file collecting the points of one resolution."""

    def __init__(self, key: int, name: str, path: str, stream: Any) -> None:
        self.key = key
        self.name = name
        self.path = path
        self.header_written = False
        self.lines = 0
        self._stream = stream
        self._closed = False

    def write_header(self, database: str) -> None:
        if self.header_written:
            return
        self._write(line_protocol_context(database, self.name))
        self.header_written = True

    def write_line(self, line: str) -> None:
        self._write(line + "\n")
        self.lines += 1

    def _write(self, text: str) -> None:
        try:
            self._stream.write(text)
        except OSError as e:
            raise WriteError(f"Failed to write to '{self.path}': {e}") from e

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._stream.flush()
            self._stream.close()
        except OSError as e:
            raise WriteError(f"Failed to close '{self.path}': {e}") from e


class BucketRegistry:
    """
    Lazily creates one output file per resolution.

    Bucket names are taken, in order, from the list of retention names
    the first time a resolution is seen; once the list is exhausted the
    resolution itself is used as name. The names therefore depend on
    the order series are exported in.

    Parameters
    ----------
    export_path : str
        Directory where the line protocol files are created.
    retentions : list of str, optional
        Retention policy names, consumed first come first served.
    database : str
        Database name written in the header of each file.
    gzipped : bool
        Compress the output files with gzip (adds a `.gz` suffix).
    file_name_format : str
        Template of the file name, relative to export_path. Supports
        the `{RATE}` (seconds per point) and `{RETENTION}` placeholders.
    """

    def __init__(
        self,
        export_path: str,
        retentions: Optional[List[str]] = None,
        database: str = DEFAULT_DATABASE,
        gzipped: bool = False,
        file_name_format: str = DEFAULT_FILE_NAME_FORMAT,
    ) -> None:
        self.export_path = export_path
        self.database = database
        self.gzipped = gzipped
        self.file_name_format = file_name_format
        self._names = [name for name in (retentions or []) if name]
        self._by_key: Dict[int, RetentionBucket] = {}
        self._paths: Dict[str, int] = {}
        self.buckets: List[RetentionBucket] = []

    def _next_name(self, key: int) -> str:
        if self._names:
            return self._names.pop(0)
        return str(key)

    def bucket_path(self, key: int, name: str) -> str:
        filename = substitute_placeholders(
            self.file_name_format, {"RATE": str(key), "RETENTION": name}
        )
        path = os.path.join(self.export_path, filename)
        if self.gzipped:
            path += ".gz"
        return path

    def bucket_for(self, key: int) -> RetentionBucket:
        """Return the bucket of a resolution, creating it on first use."""
        bucket = self._by_key.get(key)
        if bucket is not None:
            return bucket

        name = self._next_name(key)
        path = self.bucket_path(key, name)

        # Two resolutions never share a file
        if os.path.normpath(path) in self._paths:
            other = self._paths[os.path.normpath(path)]
            raise ConfigError(
                f"Archives of {key}s and {other}s would both be written to '{path}'. "
                f"Use {{RATE}} in FILE_NAME_FORMAT or distinct RETENTIONS"
            )

        try:
            # Create parent directories if they don't exist
            parent_dir = os.path.dirname(path)
            if parent_dir:
                os.makedirs(parent_dir, exist_ok=True)
            if self.gzipped:
                stream = gzip.open(path, "wt", encoding="utf-8", newline="\n")
            else:
                stream = open(path, "w", encoding="utf-8", newline="\n")
        except OSError as e:
            raise WriteError(f"Failed to create '{path}': {e}") from e

        bucket = RetentionBucket(key, name, path, stream)
        self._by_key[key] = bucket
        self._paths[os.path.normpath(path)] = key
        self.buckets.append(bucket)
        bucket.write_header(self.database)
        return bucket

    def close(self) -> None:
        """
        Flush and close every bucket, in creation order. Every bucket
        is closed even if one fails, the first error is then raised.
        """
        first_error: Optional[WriteError] = None
        for bucket in self.buckets:
            try:
                bucket.close()
            except WriteError as e:
                print(f"ERROR: {e}")
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error

    def __enter__(self) -> "BucketRegistry":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class ExportPipeline:
    """
    Writes the points of matched series into the bucket files.

    Parameters
    ----------
    registry : BucketRegistry
        Output files shared by all series.
    from_timestamp, until_timestamp : int
        Inclusive time range of the exported points.
    export_zeros : bool
        Export points whose value is 0 (skipped by default).
    scale_by_interval : bool
        Multiply values by the seconds per point of their sub-archive
        and round up, turning per-second rates into counts.
    open_archive : callable, optional
        Opens a series file. Defaults to `WhisperArchive.open`.
    verbose : bool
        Print one line per exported series instead of a counter.
    """

    def __init__(
        self,
        registry: BucketRegistry,
        from_timestamp: int = 0,
        until_timestamp: int = MAX_TIMESTAMP,
        export_zeros: bool = False,
        scale_by_interval: bool = True,
        open_archive: Optional[Callable[[str], Any]] = None,
        verbose: bool = False,
    ) -> None:
        self.registry = registry
        self.from_timestamp = from_timestamp
        self.until_timestamp = until_timestamp
        self.export_zeros = export_zeros
        self.scale_by_interval = scale_by_interval
        self.open_archive = open_archive or WhisperArchive.open
        self.verbose = verbose

    def export(self, descriptor: SeriesDescriptor) -> int:
        """
        Export one series and return the number of points written.

        Failing to open the series or to decode one of its
        sub-archives is reported and skipped; write errors are raised.
        """
        if descriptor.state is not MatchState.MATCHED:
            raise NoMatchError(f"Series '{descriptor.source_path}' is not matched")

        # Open whisper file with the archive reader
        try:
            archive = self.open_archive(descriptor.source_path)
        except ArchiveOpenError as e:
            print(f"\nERROR: {e}. Skipping this series.")
            descriptor.state = MatchState.EXPORT_FAILED
            return 0

        written = 0
        try:
            for info in archive.archives:
                # Buckets are shared by every series with the same resolution
                bucket = self.registry.bucket_for(info.seconds_per_point)
                try:
                    samples = archive.dump(info.index)
                except ArchiveDecodeError as e:
                    print(f"\nERROR: {e}. Skipping this archive.")
                    continue

                for sample in samples:
                    # Skip zeros and points out of the time range
                    if not keep_sample(
                        sample, self.from_timestamp, self.until_timestamp, self.export_zeros
                    ):
                        continue
                    value = scale_value(
                        sample.value, info.seconds_per_point, self.scale_by_interval
                    )
                    bucket.write_line(
                        encode_line(
                            descriptor.measurement,
                            descriptor.tags,
                            descriptor.field,
                            value,
                            sample.timestamp,
                        )
                    )
                    written += 1
        finally:
            archive.close()

        descriptor.state = MatchState.EXPORTED
        return written

    def run(self, migrations: List[SeriesDescriptor]) -> ExportSummary:
        """Export every series, in order."""
        summary = ExportSummary()
        for k, descriptor in enumerate(migrations):
            summary.lines += self.export(descriptor)
            if descriptor.state is MatchState.EXPORTED:
                summary.exported += 1
            else:
                summary.failed += 1

            if self.verbose:
                status = "Exported" if descriptor.state is MatchState.EXPORTED else "Failed"
                print(f"{status}: {descriptor.source_path}")
            else:
                print(f"\rExported: {k + 1:2d} series", end="", flush=True)
        print()
        return summary


def ask_for_confirmation(prompt: str) -> bool:
    """
    Ask the user a yes/no question until a valid answer is given.
    "y", "Y", "yes", "YES" and "Yes" all count as confirmations.
    """
    while True:
        try:
            response = input(f"{prompt} [y/n]: ")
        except EOFError:
            return False

        response = response.strip().lower()
        if response in ("y", "yes"):
            return True
        if response in ("n", "no"):
            return False


def main(argv: Optional[List[str]] = None) -> int:
    """Main function for command line execution."""
    parser = argparse.ArgumentParser(
        prog="whisper_migrate",
        description="""The whisper_migrate script converts Graphite
        whisper files into InfluxDB line protocol files, one file per
        archive resolution. Settings are read from an optional yaml
        configuration file and can be overridden by the flags below.""",
    )
    parser.add_argument(
        "config_file", nargs="?", help="""Path to a yaml configuration file"""
    )
    parser.add_argument("--wsp-path", help="Whisper files folder path.")
    parser.add_argument(
        "--export-path",
        help="Target directory where line protocol files will be created.",
    )
    parser.add_argument(
        "--rules-file", help="Rules file for measurement, field and tags."
    )
    parser.add_argument(
        "--from", dest="from_timestamp", type=int,
        help="Only export points after the given timestamp.",
    )
    parser.add_argument(
        "--until", dest="until_timestamp", type=int,
        help="Only export points before the given timestamp.",
    )
    parser.add_argument(
        "--zeros", action="store_true", default=None,
        help="Export null values (equal to zero). Those are ignored by default.",
    )
    parser.add_argument(
        "--gz", action="store_true", default=None,
        help="Export data in gzipped files.",
    )
    parser.add_argument(
        "--no-scale", dest="scale", action="store_false", default=None,
        help="Don't multiply values by the seconds per point of their archive.",
    )
    parser.add_argument(
        "--database", help="Name of the influxdb database to use in export context."
    )
    parser.add_argument(
        "--retentions",
        help="Comma-separated retention names to use in export context.",
    )
    parser.add_argument(
        "--verbose", action="store_true", default=None, help="Print every series."
    )
    parser.add_argument(
        "-y", "--yes", action="store_true", help="Don't ask for confirmation."
    )
    args = parser.parse_args(argv)

    overrides = {
        "WSP_PATH": args.wsp_path,
        "EXPORT_PATH": args.export_path,
        "RULES_FILE": args.rules_file,
        "FROM": args.from_timestamp,
        "UNTIL": args.until_timestamp,
        "ZEROS": args.zeros,
        "GZ": args.gz,
        "SCALE_BY_INTERVAL": args.scale,
        "DATABASE": args.database,
        "RETENTIONS": args.retentions,
        "VERBOSE": args.verbose,
    }

    try:
        conf = read_yaml(args.config_file) if args.config_file else {}
        settings = load_settings(conf, overrides)
        compiled_rules = compile_rules(settings.rules)
    except ConfigError as e:
        print(f"ERROR: {e}")
        return 1

    migrations = list_migrations(settings.wsp_path, compiled_rules, settings.verbose)

    print("----------------")
    print(f"Exporting {len(migrations)} series to {settings.export_path}")
    if not args.yes and not ask_for_confirmation("Proceed ?"):
        return 1
    print("----------------")

    try:
        with BucketRegistry(
            settings.export_path,
            retentions=settings.retentions,
            database=settings.database,
            gzipped=settings.gzipped,
            file_name_format=settings.file_name_format,
        ) as registry:
            pipeline = ExportPipeline(
                registry,
                from_timestamp=settings.from_timestamp,
                until_timestamp=settings.until_timestamp,
                export_zeros=settings.export_zeros,
                scale_by_interval=settings.scale_by_interval,
                verbose=settings.verbose,
            )
            summary = pipeline.run(migrations)
    except (WriteError, ConfigError) as e:
        print(f"\nERROR: {e}. Aborting.")
        return 1

    print(
        f"Exported {summary.exported} series ({summary.lines} points) "
        f"into {len(registry.buckets)} files, {summary.failed} failed"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
