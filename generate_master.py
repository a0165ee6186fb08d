import json
import os
import sys
import requests
from pathlib import Path
from typing import Dict, List, Optional, Any, Iterator, Callable
from dataclasses import dataclass, field


CHANNELS = ("stable", "testing")
AUXILIARY_FILES = ("commits.json", "event.json")
AUTOMATION_AUTHOR = "github-actions"

MANIFEST_KEYS = [
    "Author", "Name", "Punchline", "Description", "Changelog", "Tags",
    "CategoryTags", "IsHide", "InternalName", "AssemblyVersion",
    "TestingAssemblyVersion", "IsTestingExclusive", "RepoUrl",
    "ApplicableVersion", "DalamudApiLevel", "DownloadCount", "LastUpdate",
    "DownloadLinkInstall", "DownloadLinkUpdate", "DownloadLinkTesting",
    "LoadRequiredState", "LoadSync", "LoadPriority", "CanUnloadAsync",
    "SupportsProfiles", "ImageUrls", "IconUrl", "AcceptsFeedback",
    "FeedbackMessage"
]

# Written even when empty, with these zero values.
REQUIRED_MANIFEST_KEYS = {
    "Name": "",
    "InternalName": "",
    "AssemblyVersion": "",
    "DalamudApiLevel": 0
}

_TRUE_VALUES = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_VALUES = {"0", "f", "F", "FALSE", "false", "False"}


def parse_bool(value: str) -> bool:
    """Parse a boolean environment value, rejecting unknown spellings."""
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"invalid boolean value: {value!r}")


@dataclass
class Config:
    """Configuration settings for the plugin master generator."""
    hosting_domain: str = "xiv.starry.blue"
    enable_download_counter: bool = True
    plugins_dir: Path = Path("./plugins")
    output_name: str = "master.json"
    user_agent: str = "divination-plugin-master-generator/0 (+https://github.com/SlashNephy/divination-plugin-master-generator)"
    manifest_keys: List[str] = field(default_factory=lambda: list(MANIFEST_KEYS))
    required_manifest_keys: Dict[str, Any] = field(default_factory=lambda: dict(REQUIRED_MANIFEST_KEYS))

    @property
    def output_file(self) -> Path:
        return self.plugins_dir / self.output_name

    def channel_dir(self, channel: str) -> Path:
        return self.plugins_dir / channel

    @classmethod
    def load_default(cls) -> 'Config':
        """Load configuration from the process environment."""
        enable_download_counter = os.environ.get("ENABLE_DOWNLOAD_COUNTER")
        return cls(
            hosting_domain=os.environ.get("HOSTING_DOMAIN") or "xiv.starry.blue",
            enable_download_counter=parse_bool(enable_download_counter) if enable_download_counter else True
        )


def first_non_empty(primary: str, fallback: Callable[[], str]) -> str:
    """Return primary unless it is empty, otherwise the result of fallback().

    The fallback is only evaluated when primary is empty.
    """
    if primary:
        return primary
    return fallback()


def is_manifest_file(path: Path) -> bool:
    return path.name.endswith(".json") and path.name not in AUXILIARY_FILES


def _load_json(path: Path) -> Any:
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


def _expect(value: Any, kind: type, path: Path, key: str) -> Any:
    """Return value, or the empty kind for null/missing; raise ValueError on a mismatched type."""
    if value is None:
        return kind()
    if not isinstance(value, kind):
        raise ValueError(f"{path}: {key} must be a JSON {'object' if kind is dict else 'string'}")
    return value


class ManifestExtractor:
    """Loads every plugin manifest published in a channel directory."""

    def __init__(self, config: Config):
        self.config = config

    def extract_manifests(self, channel: str) -> List[Dict[str, Any]]:
        """Return all manifests under plugins/<channel>, or [] if the channel is missing."""
        manifests = []

        directory = self.config.channel_dir(channel)
        if not directory.exists():
            print(f"Channel directory {directory} does not exist")
            return manifests

        for path in self._walk(directory):
            if not is_manifest_file(path):
                continue

            manifest = _load_json(path)
            if not isinstance(manifest, dict):
                raise ValueError(f"{path}: manifest must be a JSON object")
            manifests.append(manifest)

        return manifests

    def _walk(self, directory: Path) -> Iterator[Path]:
        # Depth first, entries of each directory in lexical order.
        for entry in sorted(directory.iterdir(), key=lambda p: p.name):
            if entry.is_dir() and not entry.is_symlink():
                yield from self._walk(entry)
            else:
                yield entry


class PluginProcessor:
    """Derives auxiliary manifest fields from the files beside a plugin's manifest."""

    def generate_changelog(self, directory: Path) -> str:
        """Render commits.json as one "<sha>: <subject>" line per commit."""
        path = directory / "commits.json"
        if not path.exists():
            return ""

        commits = _load_json(path)
        if not isinstance(commits, list):
            raise ValueError(f"{path}: commit log must be a JSON array")

        lines = []
        for commit in commits:
            if not isinstance(commit, dict):
                raise ValueError(f"{path}: commit entries must be JSON objects")
            details = _expect(commit.get("commit"), dict, path, "commit")
            author = _expect(details.get("author"), dict, path, "commit.author")
            if _expect(author.get("name"), str, path, "commit.author.name") == AUTOMATION_AUTHOR:
                continue

            message = _expect(details.get("message"), str, path, "commit.message")
            sha = _expect(commit.get("sha"), str, path, "sha")
            subject = message.split("\n", 1)[0]
            lines.append(f"{sha[:7]}: {subject}")

        return "\n".join(lines)

    def detect_repository_url(self, directory: Path) -> str:
        path = directory / "event.json"
        if not path.exists():
            return ""

        event = _load_json(path)
        if not isinstance(event, dict):
            raise ValueError(f"{path}: event must be a JSON object")

        repository = _expect(event.get("repository"), dict, path, "repository")
        return _expect(repository.get("html_url"), str, path, "repository.html_url")

    def detect_last_updated(self, directory: Path) -> int:
        zip_path = directory / "latest.zip"
        if not zip_path.exists():
            return 0
        return int(zip_path.stat().st_mtime)

    def trim_manifest(self, manifest: Dict[str, Any], keys: List[str], required: Dict[str, Any]) -> Dict[str, Any]:
        """Keep only known keys, dropping empty optional values."""
        trimmed = {}
        for key in keys:
            value = manifest.get(key)
            if key in required:
                trimmed[key] = value if value is not None else required[key]
            elif value not in (None, "", 0, False, [], {}):
                trimmed[key] = value
        return trimmed


class DownloadCountUpdater:
    """Fetches cumulative download counts from the hosting service."""

    def __init__(self, config: Config):
        self.config = config
        self.headers = {"User-Agent": config.user_agent}

    def fetch_download_statistics(self, domain: str) -> Dict[str, int]:
        api_url = f"https://{domain}/plugins/downloads"
        print(f"Fetching download counts from {api_url}")

        response = requests.get(api_url, headers=self.headers)
        statistics = response.json()
        if not isinstance(statistics, dict):
            raise ValueError(f"{api_url}: download statistics must be a JSON object")

        for name, count in statistics.items():
            if not isinstance(count, int) or isinstance(count, bool):
                raise ValueError(f"{api_url}: download count for {name!r} must be an integer, got {count!r}")

        return statistics


class PluginMasterGenerator:
    """Main class that orchestrates the plugin master generation process."""

    def __init__(self, config: Config):
        self.config = config
        self.extractor = ManifestExtractor(config)
        self.processor = PluginProcessor()
        self.download_updater = DownloadCountUpdater(config)

    def extract_channels(self) -> Dict[str, List[Dict[str, Any]]]:
        """Extract the manifests of every channel, keyed by channel name."""
        extracted = {}
        for channel in CHANNELS:
            extracted[channel] = self.extractor.extract_manifests(channel)
            print(f"Extracted {len(extracted[channel])} {channel} manifests")
        return extracted

    def merge_manifests(self, stable: List[Dict[str, Any]], testing: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Reconcile both channels into one manifest per internal name.

        The testing manifest is the base record when present. Changelog and
        RepoUrl prefer the testing channel's files. Versions and download
        links are set from whichever channels publish the plugin.
        """
        stable_map = self._index_by_name(stable)
        testing_map = self._index_by_name(testing)

        names = list(stable_map)
        names.extend(name for name in testing_map if name not in stable_map)

        downloads: Optional[Dict[str, int]] = None
        if self.config.enable_download_counter:
            downloads = self.download_updater.fetch_download_statistics(self.config.hosting_domain)
            print(f"Loaded download counts for {len(downloads)} plugins")

        filename = "download" if self.config.enable_download_counter else "latest.zip"
        domain = self.config.hosting_domain

        manifests = []
        for name in names:
            stable_dir = self.config.channel_dir("stable") / name
            stable_manifest = stable_map.get(name)
            testing_dir = self.config.channel_dir("testing") / name
            testing_manifest = testing_map.get(name)

            manifest = dict(testing_manifest if testing_manifest is not None else stable_manifest)

            manifest["Changelog"] = first_non_empty(
                self.processor.generate_changelog(testing_dir),
                lambda: self.processor.generate_changelog(stable_dir)
            )
            manifest["RepoUrl"] = first_non_empty(
                self.processor.detect_repository_url(testing_dir),
                lambda: self.processor.detect_repository_url(stable_dir)
            )

            manifest["IsTestingExclusive"] = stable_manifest is None
            manifest["LastUpdate"] = max(
                self.processor.detect_last_updated(stable_dir),
                self.processor.detect_last_updated(testing_dir)
            )

            if stable_manifest is not None:
                manifest["AssemblyVersion"] = stable_manifest.get("AssemblyVersion", "")
                manifest["DownloadLinkInstall"] = f"https://{domain}/plugins/stable/{name}/{filename}"
            if testing_manifest is not None:
                manifest["TestingAssemblyVersion"] = testing_manifest.get("AssemblyVersion", "")
                manifest["DownloadLinkTesting"] = f"https://{domain}/plugins/testing/{name}/{filename}"

            if downloads is not None:
                manifest["DownloadCount"] = downloads.get(name, 0)

            manifests.append(manifest)

        return manifests

    def _index_by_name(self, manifests: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        # First manifest wins, later duplicates are dropped.
        indexed: Dict[str, Dict[str, Any]] = {}
        for manifest in manifests:
            indexed.setdefault(manifest.get("InternalName", ""), manifest)
        return indexed

    def dump_master(self, manifests: List[Dict[str, Any]]) -> None:
        """Write the sorted catalog, replacing the previous file only once serialized."""
        ordered = sorted(manifests, key=lambda m: m.get("InternalName", ""))
        trimmed = [
            self.processor.trim_manifest(m, self.config.manifest_keys, self.config.required_manifest_keys)
            for m in ordered
        ]
        content = json.dumps(trimmed, indent=2, ensure_ascii=False)

        output_path = self.config.output_file
        tmp_path = output_path.parent / f"{output_path.name}.tmp"
        tmp_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                f.write(content)
            os.replace(tmp_path, output_path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise

        print(f"Wrote {len(trimmed)} plugins to {output_path}")


def _fail(stage: str, error: Exception) -> None:
    print(f"failed to {stage}: {error}", file=sys.stderr)
    raise SystemExit(1)


def main():
    """Main entry point."""
    try:
        config = Config.load_default()
    except ValueError as e:
        _fail("load config", e)

    generator = PluginMasterGenerator(config)
    print("Starting plugin master generation...")

    try:
        channels = generator.extract_channels()
    except (OSError, ValueError) as e:
        _fail("extract manifests", e)

    try:
        manifests = generator.merge_manifests(channels["stable"], channels["testing"])
    except (OSError, TypeError, ValueError, requests.RequestException) as e:
        _fail("merge manifests", e)

    try:
        generator.dump_master(manifests)
    except (OSError, TypeError, ValueError) as e:
        _fail("dump manifests", e)


if __name__ == "__main__":
    main()
