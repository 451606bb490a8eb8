from __future__ import annotations

from pgfork.fork.errors import FieldViolation
from pgfork.fork.types import SSL_MODES, SUPPORTED_DRIVERS, ConnectionConfig, ForkSpec

MAX_IDENTIFIER_LENGTH = 63
MAX_CONNECTIONS_LIMIT = 100
MAX_CHUNK_SIZE = 100_000
MAX_TIMEOUT_SECONDS = 24 * 3600


def _validate_endpoint(prefix: str, config: ConnectionConfig, *, require_database: bool) -> list[FieldViolation]:
    violations: list[FieldViolation] = []
    if config.driver not in SUPPORTED_DRIVERS:
        violations.append(FieldViolation(f"{prefix}.driver", f"must be one of {list(SUPPORTED_DRIVERS)}"))
    if not config.host or not config.host.strip():
        violations.append(FieldViolation(f"{prefix}.host", "is required"))
    if require_database and not config.database:
        violations.append(FieldViolation(f"{prefix}.database", "is required"))
    if config.database and len(config.database) > MAX_IDENTIFIER_LENGTH:
        violations.append(FieldViolation(f"{prefix}.database", f"must be at most {MAX_IDENTIFIER_LENGTH} characters"))
    if config.driver == "postgresql":
        if not 1 <= config.port <= 65535:
            violations.append(FieldViolation(f"{prefix}.port", "must be between 1 and 65535"))
        if not config.user:
            violations.append(FieldViolation(f"{prefix}.user", "is required"))
        if config.sslmode not in SSL_MODES:
            violations.append(FieldViolation(f"{prefix}.sslmode", f"must be one of {list(SSL_MODES)}"))
    return violations


def _validate_table_names(field_name: str, names: tuple[str, ...]) -> list[FieldViolation]:
    return [
        FieldViolation(f"{field_name}[{index}]", "table name cannot be blank")
        for index, name in enumerate(names)
        if not name or not name.strip()
    ]


def validate_fork_spec(spec: ForkSpec) -> list[FieldViolation]:
    violations: list[FieldViolation] = []
    violations.extend(_validate_endpoint("source", spec.source, require_database=True))
    violations.extend(_validate_endpoint("destination", spec.destination, require_database=False))

    target = spec.target_database
    if not target or not target.strip():
        violations.append(FieldViolation("target_database", "is required"))
    else:
        if len(target) > MAX_IDENTIFIER_LENGTH:
            violations.append(FieldViolation("target_database", f"must be at most {MAX_IDENTIFIER_LENGTH} characters"))
        if "\x00" in target:
            violations.append(FieldViolation("target_database", "must not contain NUL bytes"))
        if spec.same_server and target == spec.source.database:
            violations.append(
                FieldViolation("target_database", "source and target databases cannot be the same on the same server")
            )

    if spec.schema_only and spec.data_only:
        violations.append(FieldViolation("schema_only", "cannot be combined with data_only"))
    if spec.data_only and spec.drop_if_exists:
        violations.append(FieldViolation("drop_if_exists", "cannot be combined with data_only"))

    violations.extend(_validate_table_names("include_tables", spec.include_tables))
    violations.extend(_validate_table_names("exclude_tables", spec.exclude_tables))
    overlap = sorted(set(spec.include_tables) & set(spec.exclude_tables))
    for table in overlap:
        violations.append(FieldViolation("exclude_tables", f"table '{table}' cannot be both included and excluded"))

    if not 1 <= spec.max_connections <= MAX_CONNECTIONS_LIMIT:
        violations.append(FieldViolation("max_connections", f"must be between 1 and {MAX_CONNECTIONS_LIMIT}"))
    if not 1 <= spec.chunk_size <= MAX_CHUNK_SIZE:
        violations.append(FieldViolation("chunk_size", f"must be between 1 and {MAX_CHUNK_SIZE}"))
    if not 0 < spec.timeout_seconds <= MAX_TIMEOUT_SECONDS:
        violations.append(FieldViolation("timeout_seconds", "must be greater than 0 and at most 24 hours"))
    if spec.retry_attempts < 1:
        violations.append(FieldViolation("retry_attempts", "must be at least 1"))
    if spec.retry_initial_delay_seconds < 0:
        violations.append(FieldViolation("retry_initial_delay_seconds", "must be >= 0"))
    if spec.retry_max_delay_seconds < spec.retry_initial_delay_seconds:
        violations.append(FieldViolation("retry_max_delay_seconds", "must be >= retry_initial_delay_seconds"))
    if spec.progress_interval_seconds <= 0:
        violations.append(FieldViolation("progress_interval_seconds", "must be greater than 0"))

    if spec.resume and not spec.job_id:
        violations.append(FieldViolation("job_id", "is required when resume is requested"))
    if spec.job_id is not None and (not spec.job_id.strip() or len(spec.job_id) > 128):
        violations.append(FieldViolation("job_id", "must be between 1 and 128 characters"))

    return violations
