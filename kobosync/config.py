import csv
import json
import os
import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, StrictStr, ValidationError

from kobosync.errors import ConfigError

# === PATH CONFIGURATION ===
RUN_CONFIGS_DIR = Path("run-configs")
INPUT_DIR = Path("input")
DEFAULT_OUTPUT_DIR = Path("output")

ENV_PREFIX = "KT_"

# === DEFAULTS (timeouts in milliseconds) ===
DEFAULT_MAX_REQUEST_RETRIES = 20
DEFAULT_MAX_DOWNLOAD_RETRIES = 30
DEFAULT_REQUEST_TIMEOUT = 15000
CONNECTION_TIMEOUT_MARGIN = 3000
DOWNLOAD_TIMEOUT_MARGIN = 6000


class FilterEntry(BaseModel):
    """One entry of the 'filters' list of a run-config file."""
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    asset_id: str = Field(alias="assetId", min_length=1)
    submission_ids: Optional[List[Union[int, str]]] = Field(default=None, alias="submissionIds")
    submission_ids_csv: Optional[str] = Field(default=None, alias="submissionIdsCsv", min_length=1)
    submission_ids_csv_id_column_name: str = Field(default="id", alias="submissionIdsCsvIdColumnName", min_length=1)
    submission_ids_csv_separator: str = Field(default=",", alias="submissionIdsCsvSeparator", min_length=1)


class RunConfigFile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    apiServerUrl: Optional[StrictStr] = None
    mediaServerUrl: Optional[StrictStr] = None
    token: Optional[StrictStr] = None
    outputDir: Optional[StrictStr] = None
    deleteImages: Optional[StrictBool] = None
    maxRequestRetries: Optional[StrictInt] = None
    maxDownloadRetries: Optional[StrictInt] = None
    requestTimeout: Optional[StrictInt] = None
    connectionTimeout: Optional[StrictInt] = None
    downloadTimeout: Optional[StrictInt] = None
    filters: List[FilterEntry] = []


class AssetFilter(BaseModel):
    model_config = ConfigDict(frozen=True)

    asset_id: str
    submission_ids: Tuple[int, ...] = ()


class RunConfig(BaseModel):
    """
    Resolved configuration for one run. Immutable; passed explicitly to
    every component that needs it.
    """
    model_config = ConfigDict(frozen=True)

    api_server_url: str
    media_server_url: str
    token: str = ""
    output_dir: Optional[Path] = None
    delete_images: bool = False
    max_request_retries: int = Field(default=DEFAULT_MAX_REQUEST_RETRIES, ge=1)
    max_download_retries: int = Field(default=DEFAULT_MAX_DOWNLOAD_RETRIES, ge=1)
    request_timeout: int = Field(default=DEFAULT_REQUEST_TIMEOUT, gt=0)
    connection_timeout: int = Field(default=DEFAULT_REQUEST_TIMEOUT + CONNECTION_TIMEOUT_MARGIN, gt=0)
    download_timeout: int = Field(default=DEFAULT_REQUEST_TIMEOUT + DOWNLOAD_TIMEOUT_MARGIN, gt=0)
    filters: Tuple[AssetFilter, ...] = ()

    @property
    def mode(self) -> str:
        return "filters" if self.filters else "token"

    @property
    def request_timeouts(self) -> Tuple[float, float]:
        """(connect, read) seconds for API requests."""
        return self.request_timeout / 1000, self.connection_timeout / 1000

    @property
    def download_timeouts(self) -> Tuple[float, float]:
        """(connect, per-chunk inactivity) seconds for attachment downloads."""
        return self.request_timeout / 1000, self.download_timeout / 1000

    def filter_for(self, asset_id: str) -> Optional[AssetFilter]:
        for f in self.filters:
            if f.asset_id == asset_id:
                return f
        return None

    def redacted(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        if data.get("token"):
            data["token"] = "***"
        return data


# -----------------------------
# Run-config file
# -----------------------------

def _lookup_file(name: str, base_dir: Path, subdir: Path) -> Path:
    """
    Find 'name' as given, or for a bare file name also under base_dir/subdir
    and base_dir.
    """
    candidates = [Path(name).expanduser().resolve()]
    if Path(name).parent == Path("."):
        candidates += [(base_dir / subdir / name).resolve(), (base_dir / name).resolve()]

    for candidate in candidates:
        if candidate.is_file():
            return candidate
    looked = "\n".join(f"  {c}" for c in dict.fromkeys(candidates))
    raise ConfigError(f"file not found: {name} - looked in:\n{looked}")


def load_user_config(config_file: str, base_dir: Path) -> RunConfigFile:
    """
    Load and validate a run-config JSON file. All problems found are reported
    together in one ConfigError.
    """
    path = _lookup_file(config_file, base_dir, RUN_CONFIGS_DIR)
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e

    try:
        run_configs = RunConfigFile.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"config file has errors: {path}\n{e}") from e

    seen = set()
    for i, entry in enumerate(run_configs.filters):
        if entry.asset_id in seen:
            raise ConfigError(f"repeated 'assetId' {entry.asset_id!r}, each assetId should appear only once in filters - in @filters entry {i}")
        seen.add(entry.asset_id)
    return run_configs


def _parse_id(raw: Any, where: str) -> int:
    if isinstance(raw, bool):
        raise ConfigError(f"id {raw!r} is not an int - {where}")
    if isinstance(raw, int):
        return raw
    try:
        number = float(str(raw).strip())
    except ValueError:
        raise ConfigError(f"id {raw!r} is not a number - {where}") from None
    if not number.is_integer():
        raise ConfigError(f"id {raw!r} is not an int - {where}")
    return int(number)


def read_submission_ids_csv(entry: FilterEntry, base_dir: Path) -> List[int]:
    path = _lookup_file(entry.submission_ids_csv, base_dir, INPUT_DIR)
    column = entry.submission_ids_csv_id_column_name

    with open(path, "r", newline="") as f:
        rows = [r for r in csv.reader(f, delimiter=entry.submission_ids_csv_separator) if any(c.strip() for c in r)]

    if not rows:
        raise ConfigError(f"csv parsed result is empty - csv file: {path}")
    if len(rows) == 1:
        raise ConfigError(f"csv parsed result has no data - csv file: {path}")

    headers = rows[0]
    if headers.count(column) == 0:
        raise ConfigError(f"id column '{column}' not found in csv headers - csv file: {path}")
    if headers.count(column) > 1:
        raise ConfigError(f"id column '{column}' found more than once in csv headers - csv file: {path}")
    index = headers.index(column)

    ids = []
    errors = []
    for i, row in enumerate(rows[1:], start=1):
        raw = row[index] if index < len(row) else ""
        if not raw.strip():
            errors.append(f"id is empty - in csv entry {i}")
            continue
        try:
            ids.append(_parse_id(raw, f"in csv entry {i}"))
        except ConfigError as e:
            errors.append(str(e))
    if errors:
        raise ConfigError(f"csv file has errors: {path}\n" + "\n".join(errors))
    return ids


def resolve_submission_ids(entry: FilterEntry, base_dir: Path) -> Tuple[int, ...]:
    ids: List[int] = []
    for i, raw in enumerate(entry.submission_ids or []):
        ids.append(_parse_id(raw, f"in @submissionIds entry {i}"))
    if entry.submission_ids_csv:
        ids.extend(read_submission_ids_csv(entry, base_dir))
    return tuple(dict.fromkeys(ids))


# -----------------------------
# Resolution: CLI > env > file > defaults
# -----------------------------

def _env_bool(env: Mapping[str, str], name: str) -> Optional[bool]:
    raw = env.get(name)
    if raw is None:
        return None
    if raw.lower() == "true":
        return True
    if raw.lower() == "false":
        return False
    raise ConfigError(f"{name} is defined, but has an invalid value: {raw}, expected boolean")


def _first(*values):
    for v in values:
        if v is not None and v != "":
            return v
    return None


def resolve_config(
    cli: Optional[Dict[str, Any]] = None,
    env: Optional[Mapping[str, str]] = None,
    base_dir: Optional[Path] = None,
) -> RunConfig:
    """
    Build the run configuration from command line options, environment
    variables and an optional run-config file, in that order of precedence.
    """
    cli = cli or {}
    env = os.environ if env is None else env
    base_dir = base_dir or Path.cwd()

    run_configs = RunConfigFile()
    if cli.get("config_file"):
        run_configs = load_user_config(cli["config_file"], base_dir)

    def pick(key: str, file_key: str):
        return _first(cli.get(key), env.get(ENV_PREFIX + key.upper()), getattr(run_configs, file_key))

    api_server_url = pick("api_server_url", "apiServerUrl")
    if not api_server_url:
        raise ConfigError("API_SERVER_URL is required, but is not defined")
    media_server_url = pick("media_server_url", "mediaServerUrl")
    if not media_server_url:
        raise ConfigError("MEDIA_SERVER_URL is required, but is not defined")

    delete_images = _first(
        True if cli.get("delete_images") else None,
        _env_bool(env, ENV_PREFIX + "DELETE_IMAGES"),
        run_configs.deleteImages,
        False,
    )

    request_timeout = pick("request_timeout", "requestTimeout") or DEFAULT_REQUEST_TIMEOUT
    try:
        request_timeout = int(request_timeout)
    except ValueError:
        raise ConfigError(f"request timeout must be an integer (ms): {request_timeout}") from None

    filters = tuple(
        AssetFilter(asset_id=entry.asset_id, submission_ids=resolve_submission_ids(entry, base_dir))
        for entry in run_configs.filters
    )
    token = pick("token", "token") or ""
    if not filters and not token:
        raise ConfigError("either 'filters' or 'token' should be properly configured")

    output_dir = pick("output_dir", "outputDir")
    try:
        return RunConfig(
            api_server_url=str(api_server_url).rstrip("/"),
            media_server_url=str(media_server_url).rstrip("/"),
            token=token,
            output_dir=Path(output_dir) if output_dir else None,
            delete_images=delete_images,
            max_request_retries=pick("max_request_retries", "maxRequestRetries") or DEFAULT_MAX_REQUEST_RETRIES,
            max_download_retries=pick("max_download_retries", "maxDownloadRetries") or DEFAULT_MAX_DOWNLOAD_RETRIES,
            request_timeout=request_timeout,
            connection_timeout=pick("connection_timeout", "connectionTimeout") or request_timeout + CONNECTION_TIMEOUT_MARGIN,
            download_timeout=pick("download_timeout", "downloadTimeout") or request_timeout + DOWNLOAD_TIMEOUT_MARGIN,
            filters=filters,
        )
    except ValidationError as e:
        raise ConfigError(f"invalid configuration:\n{e}") from e


# -----------------------------
# Output dirs tree
# -----------------------------

class OutputPaths(BaseModel):
    """
    output/
        .attachments_map/
        images/
        runs/
            run_<timestamp>/
                logs/run.log
                steps/
                images_deleted/
    """
    model_config = ConfigDict(frozen=True)

    output: Path
    attachments_map: Path
    images: Path
    runs: Path
    current_run: Path
    logs: Path
    run_log: Path
    steps: Path
    images_deleted: Path


def current_timestamp() -> str:
    return datetime.datetime.now().strftime("%Y-%m-%d-%H-%M-%S")


def setup_output_dir(config: RunConfig, base_dir: Optional[Path] = None) -> OutputPaths:
    """
    Create the output tree for this run. A user-given output dir must exist;
    the default one is created on demand.
    """
    base_dir = base_dir or Path.cwd()
    if config.output_dir is not None:
        candidates = [config.output_dir.expanduser().resolve()]
        if config.output_dir.parent == Path("."):
            candidates.append((base_dir / config.output_dir).resolve())
        output = next((c for c in candidates if c.is_dir()), None)
        if output is None:
            looked = "\n".join(f"  {c}" for c in dict.fromkeys(candidates))
            raise ConfigError(f"output dir not found: {config.output_dir} - looked in:\n{looked}")
    else:
        output = (base_dir / DEFAULT_OUTPUT_DIR).resolve()

    try:
        runs = output / "runs"
        stamp = current_timestamp()
        current_run = runs / f"run_{stamp}"
        tries = 1
        while current_run.exists():
            if tries > 100:
                raise ConfigError("run path could not be created")
            current_run = runs / f"run_{stamp}-{tries}"
            tries += 1

        paths = OutputPaths(
            output=output,
            attachments_map=output / ".attachments_map",
            images=output / "images",
            runs=runs,
            current_run=current_run,
            logs=current_run / "logs",
            run_log=current_run / "logs" / "run.log",
            steps=current_run / "steps",
            images_deleted=current_run / "images_deleted",
        )
        for d in (paths.attachments_map, paths.images, paths.logs, paths.steps, paths.images_deleted):
            d.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigError(f"cannot create output dirs tree in {output}: {e}") from e
    return paths


def write_run_config(config: RunConfig, paths: OutputPaths):
    with open(paths.current_run / "run-configs.json", "w") as f:
        json.dump(config.redacted(), f, indent=2)
