#!/usr/bin/env python3
"""
Repository Change Heatmap (v1.0.0)

Turns a repository's commit history into a "change intensity" tree for a
zoomable treemap:

- Numstat line parsing with rename (brace/arrow) resolution
- Path tree construction with directory reclassification
- Bottom-up aggregation and a sorted, zero-filtered name/value/children export
- Git history reading with fetch-and-retry for shallow clones
- Lightweight JSON data server for the browser treemap
- Config files (.repo-heatmap.yaml / .json), colored progress output

Version: 1.0.0
"""

import json
import os
import subprocess
import sys
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import click
import yaml
from colorama import Fore, Style, init as colorama_init
from tqdm import tqdm

colorama_init(autoreset=True)


# Version information
VERSION = "1.0.0"

DEFAULT_ROOT_NAME = "repository_root"
DEFAULT_PORT = 8080
DEFAULT_HTML = "heatmap.html"
RENAME_MARKER = "=>"

CONFIG_FILE_NAMES = [
    ".repo-heatmap.yaml",
    ".repo-heatmap.yml",
    ".repo-heatmap.json",
]


# ============================================================================
# PROGRESS REPORTING
# ============================================================================


class ProgressReporter:
    """
    Console reporting for the analysis run.

    Stage banners and status lines are colored with colorama; the numstat
    fold gets a tqdm bar. Quiet mode silences everything except errors,
    verbose mode adds per-stage statistics and per-line parser warnings.
    """

    def __init__(
        self, quiet: bool = False, verbose: bool = False, use_colors: bool = True
    ):
        self.quiet = quiet
        self.verbose = verbose
        self.use_colors = use_colors
        self.start_time = time.time()
        self.stage_times = {}

    def _colorize(self, text: str, color: str) -> str:
        if self.use_colors:
            return f"{color}{text}{Style.RESET_ALL}"
        return text

    def _banner(self, title: str, color: str, lines: List[str]):
        rule = self._colorize("=" * 70, Fore.CYAN)
        print(f"\n{rule}\n{self._colorize(title, color)}")
        for line in lines:
            print(f"   {line}")
        print(rule)

    def _line(self, message: str, color: str, shown: bool = True):
        if shown and not self.quiet:
            print(self._colorize(message, color))

    def stage_start(self, stage_name: str, message: str = ""):
        if self.quiet:
            return
        self.stage_times[stage_name] = time.time()
        self._banner(
            f"🔄 {stage_name}", Fore.BLUE + Style.BRIGHT, [message] if message else []
        )

    def stage_complete(self, stage_name: str, stats: Dict = None):
        """Report elapsed time, plus the stage statistics when verbose"""
        elapsed = time.time() - self.stage_times.get(stage_name, time.time())
        self._line(
            f"✅ {stage_name} complete ({elapsed:.2f}s)", Fore.GREEN + Style.BRIGHT
        )
        for key, value in (stats or {}).items():
            self._line(f"   {key}: {value}", Style.DIM, shown=self.verbose)

    def create_progress_bar(
        self, total: int, desc: str = "Parsing"
    ) -> Optional[tqdm]:
        if self.quiet:
            return None
        return tqdm(
            total=total,
            desc=self._colorize(desc, Fore.CYAN),
            unit=" lines",
            ncols=100,
            leave=False,
        )

    def info(self, message: str):
        self._line(f"ℹ️  {message}", Fore.BLUE)

    def warning(self, message: str):
        self._line(f"⚠️  {message}", Fore.YELLOW + Style.BRIGHT)

    def debug(self, message: str):
        self._line(f"   {message}", Style.DIM, shown=self.verbose)

    def error(self, message: str):
        # Errors ignore quiet mode
        text = self._colorize(f"❌ ERROR: {message}", Fore.RED + Style.BRIGHT)
        print(text, file=sys.stderr)

    def summary(self, stats: Dict[str, Any]):
        if self.quiet:
            return
        elapsed = time.time() - self.start_time
        lines = [f"{key}: {value}" for key, value in stats.items()]
        lines.append(f"⏱️  Total time: {elapsed:.2f}s")
        self._banner("📊 HEATMAP SUMMARY", Fore.MAGENTA + Style.BRIGHT, lines)


# ============================================================================
# DATA STRUCTURES & MODELS
# ============================================================================


@dataclass
class ChangeRecord:
    """One accepted numstat line: a file touched once."""

    file_path: str
    weight: int = 1


@dataclass
class FileNode:
    name: str
    path: str
    value: int = 0

    @property
    def is_directory(self) -> bool:
        return False


@dataclass
class DirectoryNode:
    name: str
    path: str
    value: int = 0
    children: Dict[str, "TreeNode"] = field(default_factory=dict)

    @property
    def is_directory(self) -> bool:
        return True


TreeNode = Union[FileNode, DirectoryNode]


@dataclass
class ParseStats:
    """Counters collected while folding numstat text into a weight map"""

    lines_processed: int = 0
    records_accepted: int = 0
    renames_resolved: int = 0
    binary_records: int = 0
    lines_skipped: int = 0
    empty_paths: int = 0

    def to_dict(self) -> Dict:
        return {
            "lines_processed": self.lines_processed,
            "records_accepted": self.records_accepted,
            "renames_resolved": self.renames_resolved,
            "binary_records": self.binary_records,
            "lines_skipped": self.lines_skipped,
            "empty_paths": self.empty_paths,
        }


@dataclass
class BuildStats:
    files_created: int = 0
    directories_created: int = 0
    zero_weight_skipped: int = 0
    collisions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "files_created": self.files_created,
            "directories_created": self.directories_created,
            "zero_weight_skipped": self.zero_weight_skipped,
            "collisions": len(self.collisions),
        }


# ============================================================================
# NUMSTAT LINE PARSING
# ============================================================================


def is_stat_field(value: str) -> bool:
    """A numstat count column: digits, or '-' for binary files."""
    return value == "-" or value.isdigit()


def normalize_path(path: str) -> str:
    """
    Normalize a path taken from a numstat line.

    Forward slashes only, surrounding whitespace trimmed, leftover leading
    '{' / spaces from brace stripping removed, repeated slashes collapsed.
    """
    normalized = path.replace("\\", "/").strip()
    normalized = normalized.lstrip("{ ")
    while "//" in normalized:
        normalized = normalized.replace("//", "/")
    return normalized


def extract_rename_destination(path_text: str) -> str:
    """
    Resolve git's rename notation to the destination path.

    Handles:
      - partial path:  "src/{old.go => new.go}" or "src/{a => b}/file.go"
      - whole path:    "{old/path.go => new/path.go}"

    Returns an empty string when neither form can be resolved.
    """
    left = path_text.find("{")
    right = path_text.find("}", left + 1) if left >= 0 else -1
    arrow = path_text.find(RENAME_MARKER)

    if 0 <= left < arrow < right:
        prefix = path_text[:left]
        suffix = path_text[right + 1 :]
        inside_parts = path_text[left + 1 : right].split(RENAME_MARKER)
        if len(inside_parts) == 2:
            return (prefix + inside_parts[1].strip() + suffix).strip()
        return ""

    if left == 0 and arrow > 0:
        inside = path_text[1:]
        arrow = inside.find(RENAME_MARKER)
        if arrow > 0:
            right_side = inside[arrow + len(RENAME_MARKER) :]
            if right_side.startswith(" "):
                right_side = right_side[1:]
            if right_side.endswith("}"):
                right_side = right_side[:-1]
            return right_side.strip()

    return ""


class NumstatParser:
    """
    Classifies and decodes `git log --numstat` lines one at a time.

    Each accepted line counts as one touch of its file, regardless of the
    added/deleted line counts. Malformed and unresolvable rename lines are
    skipped with a warning; nothing in here raises on bad input.
    """

    def __init__(self, reporter: Optional[ProgressReporter] = None):
        self.reporter = reporter or ProgressReporter(quiet=True)
        self.stats = ParseStats()
        self.warnings: List[str] = []

    def _skip(self, message: str, line: str) -> None:
        warning = f"{message}: {line}"
        self.warnings.append(warning)
        self.stats.lines_skipped += 1
        self.reporter.debug(f"WARN: {warning}")

    def parse_line(self, line: str) -> Optional[ChangeRecord]:
        """Return a ChangeRecord for a stat line, or None if it is skipped."""
        line = line.rstrip("\r\n")
        if not line:
            # Commit separator
            return None

        self.stats.lines_processed += 1
        parts = line.split()

        if RENAME_MARKER in line:
            has_stats = (
                len(parts) >= 3
                and is_stat_field(parts[0])
                and is_stat_field(parts[1])
            )
            path_text = line.split(None, 2)[2] if has_stats else line.strip()

            file_path = extract_rename_destination(path_text)
            if not file_path and has_stats and "{" not in path_text:
                # No shared prefix or suffix: "old.go => new.go"
                sides = path_text.split(RENAME_MARKER)
                if len(sides) == 2:
                    file_path = sides[1].strip()
            if not file_path:
                self._skip("Could not parse rename line", line)
                return None
            if not has_stats:
                self._skip("Could not parse numeric fields in rename line", line)
                return None
            self.stats.renames_resolved += 1
        elif len(parts) >= 3:
            added, deleted, file_path = line.split(None, 2)
            if not (is_stat_field(added) and is_stat_field(deleted)):
                self._skip("Skipping numstat line with non-numeric counts", line)
                return None
        else:
            self._skip("Skipping malformed numstat line (expected 3+ fields)", line)
            return None

        if parts[0] == "-" or parts[1] == "-":
            self.stats.binary_records += 1

        normalized = normalize_path(file_path)
        if not normalized:
            self.stats.empty_paths += 1
            return None

        self.stats.records_accepted += 1
        return ChangeRecord(file_path=normalized, weight=1)

    def parse(self, text: str, progress_bar: Optional[tqdm] = None) -> Dict[str, int]:
        """Fold numstat text into a weight map (path -> touch count)."""
        counts = Counter()
        for line in text.splitlines():
            record = self.parse_line(line)
            if record is not None:
                counts[record.file_path] += record.weight
            if progress_bar is not None:
                progress_bar.update(1)
        return dict(counts)


# ============================================================================
# PATH TREE CONSTRUCTION
# ============================================================================


def root_name_for(repo_path: str) -> str:
    """Base name of the repository directory, or a fixed fallback."""
    name = Path(repo_path).name if repo_path else ""
    if name in ("", ".", "/"):
        return DEFAULT_ROOT_NAME
    return name


class PathTreeBuilder:
    """
    Materializes a weight map into a DirectoryNode/FileNode tree.

    A node that has to hold children is always a directory: a file node in
    the way is replaced by a directory of the same name, and a file record
    that lands on an existing directory is dropped. Directory values are
    left at 0 for aggregation.
    """

    def __init__(self, root_name: str = DEFAULT_ROOT_NAME):
        self.root_name = root_name or DEFAULT_ROOT_NAME
        self.stats = BuildStats()

    def _ensure_directory(
        self, parent: DirectoryNode, name: str, path: str
    ) -> DirectoryNode:
        child = parent.children.get(name)
        if isinstance(child, DirectoryNode):
            return child

        if isinstance(child, FileNode):
            self.stats.collisions.append(child.path)
        directory = DirectoryNode(name=name, path=path)
        # Assigning an existing key keeps its insertion position
        parent.children[name] = directory
        self.stats.directories_created += 1
        return directory

    def _add_file(
        self, parent: DirectoryNode, name: str, path: str, weight: int
    ) -> None:
        child = parent.children.get(name)
        if child is None:
            parent.children[name] = FileNode(name=name, path=path, value=weight)
            self.stats.files_created += 1
        elif isinstance(child, FileNode):
            # Two weight map keys that only differed by stray braces
            child.value += weight
            self.stats.collisions.append(path)
        else:
            self.stats.collisions.append(path)

    def insert(self, root: DirectoryNode, file_path: str, weight: int) -> None:
        segments = [part.strip(" {}") for part in file_path.split("/")]
        segments = [part for part in segments if part]
        if not segments:
            return

        current = root
        for i, part in enumerate(segments[:-1]):
            current = self._ensure_directory(current, part, "/".join(segments[: i + 1]))
        self._add_file(current, segments[-1], "/".join(segments), weight)

    def build(self, weight_map: Dict[str, int]) -> DirectoryNode:
        root = DirectoryNode(name=self.root_name, path="")
        for file_path, weight in weight_map.items():
            if weight <= 0:
                self.stats.zero_weight_skipped += 1
                continue
            self.insert(root, file_path, weight)
        return root


# ============================================================================
# AGGREGATION & EXPORT
# ============================================================================


def aggregate_tree(node: TreeNode) -> int:
    """Post-order: directories take the sum of their children's values."""
    if isinstance(node, FileNode):
        return node.value

    total = 0
    for child in node.children.values():
        total += aggregate_tree(child)
    node.value = total
    return total


def export_tree(node: TreeNode) -> Dict[str, Any]:
    """
    Convert an aggregated tree into the name/value/children format.

    Zero-valued children are pruned, the rest are sorted by value
    descending (stable, so ties keep insertion order). `children` is
    omitted when nothing is left.
    """
    exported = {"name": node.name, "value": node.value}

    if isinstance(node, DirectoryNode):
        children = [
            export_tree(child) for child in node.children.values() if child.value > 0
        ]
        children.sort(key=lambda item: item["value"], reverse=True)
        if children:
            exported["children"] = children

    return exported


class HeatmapDataset:
    """
    Owns a built tree during its aggregate-then-export pass.

    `finalize()` is idempotent: the tree is aggregated once and the export
    structure is cached.
    """

    def __init__(
        self, root: DirectoryNode, reporter: Optional[ProgressReporter] = None
    ):
        self.root = root
        self.reporter = reporter or ProgressReporter(quiet=True)
        self.data = None
        self.processing_time = 0.0

    def finalize(self) -> dict:
        if self.data is None:
            start = time.time()
            aggregate_tree(self.root)
            self.data = export_tree(self.root)
            self.processing_time = time.time() - start
        return self.data

    def export(self, output_path: str) -> int:
        """Export the heatmap tree to JSON, returns the payload size"""
        data = self.finalize()
        directory = os.path.dirname(output_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        payload = json.dumps(data, indent=2, ensure_ascii=False)
        with open(output_path, "w", encoding="utf-8") as f:
            f.write(payload)
        self.reporter.debug(f"Wrote {len(payload):,} bytes to {output_path}")
        return len(payload)


# ============================================================================
# GIT HISTORY
# ============================================================================


class GitLogReader:
    """
    Produces raw `git log --numstat` text for a repository, or fails.

    A failed log is retried once after trying to deepen the history
    (`fetch --unshallow`, then a plain `fetch`).
    """

    def __init__(
        self,
        repo_path: str,
        include_merges: bool = False,
        reporter: Optional[ProgressReporter] = None,
    ):
        self.repo_path = repo_path
        self.include_merges = include_merges
        self.reporter = reporter or ProgressReporter(quiet=True)

    def log_command(self) -> List[str]:
        cmd = ["git", "-C", self.repo_path, "log", "--numstat", "--pretty=format:"]
        if not self.include_merges:
            cmd.append("--no-merges")
        return cmd

    def _run(self, cmd: List[str]) -> subprocess.CompletedProcess:
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
        )

    def _deepen_history(self) -> None:
        self.reporter.info("Attempting git fetch --unshallow...")
        result = self._run(["git", "-C", self.repo_path, "fetch", "--unshallow"])
        if result.returncode == 0:
            return

        self.reporter.warning(f"git fetch --unshallow failed: {result.stderr.strip()}")
        self.reporter.info("Attempting simple 'git fetch'...")
        result = self._run(["git", "-C", self.repo_path, "fetch"])
        if result.returncode != 0:
            self.reporter.warning(
                f"Simple 'git fetch' also failed: {result.stderr.strip()}"
            )

    def read_numstat(self) -> str:
        if not os.path.exists(os.path.join(self.repo_path, ".git")):
            raise RuntimeError(
                f"path '{self.repo_path}' does not appear to be a git repository "
                "(.git directory not found)"
            )

        result = self._run(self.log_command())
        if result.returncode == 0:
            return result.stdout

        self.reporter.warning(
            f"Initial 'git log --numstat' failed: {result.stderr.strip()}"
        )
        self._deepen_history()

        self.reporter.info("Retrying git log --numstat...")
        result = self._run(self.log_command())
        if result.returncode != 0:
            raise RuntimeError(
                f"Git command failed even after fetch attempts: {result.stderr.strip()}"
            )
        self.reporter.info("git log --numstat succeeded after fetch attempt.")
        return result.stdout


# ============================================================================
# ANALYZER
# ============================================================================


@dataclass
class HeatmapMetrics:
    lines_processed: int = 0
    unique_files: int = 0
    lines_skipped: int = 0
    root_value: int = 0
    total_time: float = 0.0

    def to_dict(self) -> Dict:
        return {
            "lines_processed": self.lines_processed,
            "unique_files": self.unique_files,
            "lines_skipped": self.lines_skipped,
            "root_value": self.root_value,
            "total_time_seconds": round(self.total_time, 2),
        }


class RepositoryHeatmap:
    """
    Runs the whole pipeline once: git history -> weight map -> tree ->
    aggregated export. The resulting `data` dict is never mutated after
    `analyze_text` returns.
    """

    def __init__(
        self,
        repo_path: str,
        reporter: Optional[ProgressReporter] = None,
        include_merges: bool = False,
    ):
        self.repo_path = os.path.abspath(repo_path)
        self.reporter = reporter or ProgressReporter()
        self.include_merges = include_merges
        self.parser = NumstatParser(reporter=self.reporter)
        self.weight_map: Dict[str, int] = {}
        self.tree: Optional[DirectoryNode] = None
        self.dataset: Optional[HeatmapDataset] = None
        self.data: Optional[dict] = None
        self.metrics = HeatmapMetrics()

    @property
    def warnings(self) -> List[str]:
        return self.parser.warnings

    def read_history(self) -> str:
        reader = GitLogReader(
            self.repo_path, include_merges=self.include_merges, reporter=self.reporter
        )
        return reader.read_numstat()

    def analyze_repository(self) -> dict:
        self.reporter.stage_start(
            "Git Log Processing", f"Reading history of {self.repo_path}"
        )
        try:
            text = self.read_history()
        except Exception as e:
            self.reporter.error(f"Failed to read repository history: {str(e)}")
            raise
        self.reporter.stage_complete("Git Log Processing")
        return self.analyze_text(text)

    def analyze_text(self, text: str) -> dict:
        start_time = time.time()

        self.reporter.stage_start(
            "Parsing", "Folding numstat lines into per-file counts..."
        )
        total_lines = text.count("\n") + 1 if text else 0
        progress_bar = self.reporter.create_progress_bar(
            total_lines, desc="Parsing numstat"
        )
        try:
            self.weight_map = self.parser.parse(text, progress_bar=progress_bar)
        finally:
            if progress_bar:
                progress_bar.close()
        self.reporter.stage_complete("Parsing", self.parser.stats.to_dict())
        self.reporter.info(
            f"Processed {self.parser.stats.lines_processed:,} numstat lines, "
            f"found {len(self.weight_map):,} unique files changed."
        )
        if self.parser.warnings and not self.reporter.verbose:
            self.reporter.warning(
                f"Skipped {len(self.parser.warnings):,} unparseable lines "
                "(use -v for details)"
            )

        self.reporter.stage_start("Aggregation", "Aggregating directory counts...")
        builder = PathTreeBuilder(root_name_for(self.repo_path))
        self.tree = builder.build(self.weight_map)
        self.dataset = HeatmapDataset(self.tree, reporter=self.reporter)
        self.data = self.dataset.finalize()
        aggregation_stats = builder.stats.to_dict()
        aggregation_stats["aggregation_seconds"] = round(
            self.dataset.processing_time, 3
        )
        self.reporter.stage_complete("Aggregation", aggregation_stats)

        if self.tree.value == 0 and self.weight_map:
            self.reporter.warning(
                "Root value is 0 after aggregation, but files were processed."
            )
        elif self.tree.value == 0:
            self.reporter.warning("No file changes seem to have been recorded.")
        else:
            self.reporter.info(
                f"Root node '{self.tree.name}' aggregated value: {self.tree.value:,}"
            )

        self.metrics.lines_processed = self.parser.stats.lines_processed
        self.metrics.unique_files = len(self.weight_map)
        self.metrics.lines_skipped = self.parser.stats.lines_skipped
        self.metrics.root_value = self.tree.value
        self.metrics.total_time = time.time() - start_time
        return self.data

    def export(self, output_path: str) -> int:
        if self.dataset is None:
            raise RuntimeError("Repository has not been analyzed yet")
        return self.dataset.export(output_path)

    def write_warnings(self, output_path: str) -> None:
        with open(output_path, "w", encoding="utf-8") as f:
            f.write("\n".join(self.warnings))


# ============================================================================
# DATA SERVER
# ============================================================================


FALLBACK_PAGE = """<!DOCTYPE html>
<html>
<head><title>Git Heatmap</title></head>
<body>
    <h1>Git Repository Heatmap</h1>
    <p><strong>Error:</strong> Could not find <code>{html}</code>.</p>
    <p>Data is served at <a href="/data">/data</a>.</p>
</body>
</html>
"""


def make_handler(
    data: Optional[dict],
    error: Optional[str] = None,
    html_path: str = DEFAULT_HTML,
    reporter: Optional[ProgressReporter] = None,
):
    """
    Build a request handler class bound to an already computed export.

    Handlers only read `data`; it is shared by every request thread.
    """
    reporter = reporter or ProgressReporter(quiet=True)

    class HeatmapRequestHandler(BaseHTTPRequestHandler):
        def _send(self, status: int, body: bytes, content_type: str):
            self.send_response(status)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(body)))
            if self.path.split("?")[0] == "/data":
                self.send_header("Access-Control-Allow-Origin", "*")
            self.end_headers()
            self.wfile.write(body)

        def _send_data(self):
            if error is not None:
                reporter.error(f"/data: analysis error encountered: {error}")
                message = f"Error analyzing repository: {error}\n"
                self._send(500, message.encode("utf-8"), "text/plain; charset=utf-8")
                return
            if data is None:
                reporter.error("/data: repository data is not available")
                message = "Repository data is not available or analysis failed.\n"
                self._send(500, message.encode("utf-8"), "text/plain; charset=utf-8")
                return
            body = json.dumps(data).encode("utf-8")
            self._send(200, body, "application/json")

        def _send_index(self):
            if os.path.isfile(html_path):
                with open(html_path, "rb") as f:
                    body = f.read()
            else:
                page = FALLBACK_PAGE.format(html=os.path.basename(html_path))
                body = page.encode("utf-8")
            self._send(200, body, "text/html; charset=utf-8")

        def do_GET(self):
            route = self.path.split("?")[0]
            if route == "/data":
                self._send_data()
            elif route == "/":
                self._send_index()
            else:
                self._send(404, b"404 page not found\n", "text/plain; charset=utf-8")

        def log_message(self, format, *args):
            reporter.debug(f"{self.address_string()} - {format % args}")

    return HeatmapRequestHandler


def create_server(
    data: Optional[dict],
    host: str = "",
    port: int = DEFAULT_PORT,
    error: Optional[str] = None,
    html_path: str = DEFAULT_HTML,
    reporter: Optional[ProgressReporter] = None,
) -> ThreadingHTTPServer:
    handler = make_handler(data, error=error, html_path=html_path, reporter=reporter)
    return ThreadingHTTPServer((host, port), handler)


def serve_heatmap(
    data: Optional[dict],
    host: str = "",
    port: int = DEFAULT_PORT,
    error: Optional[str] = None,
    html_path: str = DEFAULT_HTML,
    reporter: Optional[ProgressReporter] = None,
):
    """Serve the heatmap until interrupted"""
    reporter = reporter or ProgressReporter()
    httpd = create_server(
        data, host=host, port=port, error=error, html_path=html_path, reporter=reporter
    )
    display_host = host or "localhost"
    reporter.info(f"Server running on http://{display_host}:{port}")
    reporter.info(
        f"Access http://{display_host}:{port}/ for visualization "
        f"(requires {html_path})"
    )
    reporter.info(f"Access http://{display_host}:{port}/data for raw JSON data")
    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        reporter.info("Stopping server...")
    finally:
        httpd.server_close()


# ============================================================================
# CONFIGURATION
# ============================================================================


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML or JSON file."""
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    file_ext = os.path.splitext(config_path)[1].lower()

    with open(config_path, "r", encoding="utf-8") as f:
        if file_ext in [".yaml", ".yml"]:
            config = yaml.safe_load(f) or {}
        elif file_ext == ".json":
            config = json.load(f)
        else:
            raise ValueError(f"Unsupported config file format: {file_ext}")

    if not isinstance(config, dict):
        raise ValueError(f"Configuration file must contain a mapping: {config_path}")
    return config


def find_config_file(repo_path: str) -> Optional[str]:
    """
    Auto-discover configuration file in repository or current directory.
    Searches for: .repo-heatmap.yaml, .repo-heatmap.yml, .repo-heatmap.json
    """
    for search_dir in [repo_path, os.getcwd()]:
        for config_name in CONFIG_FILE_NAMES:
            config_path = os.path.join(search_dir, config_name)
            if os.path.exists(config_path):
                return config_path
    return None


class ConfigResolver:
    """
    Resolve configuration with precedence: CLI > Config File > Defaults
    """

    DEFAULTS = {
        "host": "",
        "port": DEFAULT_PORT,
        "html": DEFAULT_HTML,
        "serve": True,
        "include_merges": False,
        "quiet": False,
        "verbose": False,
        "no_color": False,
    }

    def __init__(
        self,
        cli_args: Dict[str, Any],
        config_path: Optional[str],
        repo_path: str,
    ):
        self.cli = {k: v for k, v in cli_args.items() if v is not None}
        self.config = {}
        self.config_source = None

        if config_path:
            self.config = load_config_file(config_path)
            self.config_source = config_path
        else:
            auto_path = find_config_file(repo_path)
            if auto_path:
                try:
                    self.config = load_config_file(auto_path)
                    self.config_source = auto_path
                except (OSError, ValueError, yaml.YAMLError) as e:
                    print(
                        f"Warning: Found config file but failed to load: {e}",
                        file=sys.stderr,
                    )

        # Normalize config keys (kebab-case to snake_case)
        self.config = {k.replace("-", "_"): v for k, v in (self.config or {}).items()}

    def get(self, key: str, default: Any = None) -> Any:
        if key in self.cli:
            return self.cli[key]
        if key in self.config:
            return self.config[key]
        if key in self.DEFAULTS:
            return self.DEFAULTS[key]
        return default


# ============================================================================
# CLI INTERFACE
# ============================================================================


@click.command(context_settings=dict(help_option_names=["-h", "--help"]))
@click.argument(
    "repo_path",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
)
@click.option(
    "-o",
    "--output",
    type=click.Path(dir_okay=False),
    help="Write the heatmap JSON to this file",
)
@click.option(
    "--config",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path (.yaml or .json)",
)
@click.option("--host", help="Interface to bind the data server to (default: all)")
@click.option("--port", type=int, help=f"Data server port (default: {DEFAULT_PORT})")
@click.option(
    "--html",
    type=click.Path(dir_okay=False),
    help=f"Visualization page served at / (default: {DEFAULT_HTML})",
)
@click.option(
    "--serve/--no-serve",
    default=None,
    help="Start the data server after analysis (default: serve)",
)
@click.option(
    "--include-merges",
    is_flag=True,
    default=None,
    help="Count files touched by merge commits",
)
@click.option(
    "-q", "--quiet", is_flag=True, default=None, help="Suppress progress output"
)
@click.option(
    "-v",
    "--verbose",
    is_flag=True,
    default=None,
    help="Show every skipped line and stage statistics",
)
@click.option("--no-color", is_flag=True, default=None, help="Disable colored output")
@click.option(
    "--dry-run",
    is_flag=True,
    help="Show what would be done without running analysis",
)
@click.version_option(version=VERSION)
def main(repo_path, output, config, **kwargs):
    """
    Build a change-intensity treemap dataset from a git repository's
    history and serve it to the browser heatmap.
    """
    dry_run = kwargs.pop("dry_run", False)
    try:
        resolver = ConfigResolver(kwargs, config, repo_path)
    except (ValueError, yaml.YAMLError) as e:
        ProgressReporter().error(f"Invalid configuration: {e}")
        sys.exit(1)

    quiet = resolver.get("quiet")
    verbose = resolver.get("verbose")
    reporter = ProgressReporter(
        quiet=quiet, verbose=verbose, use_colors=not resolver.get("no_color")
    )

    output = output or resolver.get("output")
    host = resolver.get("host")
    port = resolver.get("port")
    html_path = resolver.get("html")
    serve = resolver.get("serve")
    include_merges = resolver.get("include_merges")

    if resolver.config_source:
        reporter.info(f"Using configuration: {resolver.config_source}")

    if dry_run:
        reporter.info("DRY RUN MODE - No analysis will be performed")
        reporter.info(f"Repository: {repo_path}")
        reporter.info(f"Root node name: {root_name_for(repo_path)}")
        command = GitLogReader(repo_path, include_merges).log_command()
        reporter.info(f"Command: {' '.join(command)}")
        if output:
            reporter.info(f"  ✓ {output}")
        if serve:
            reporter.info(f"  ✓ server on port {port} (page: {html_path})")
        return

    if not os.path.exists(os.path.join(repo_path, ".git")):
        reporter.error(f"Not a git repository: {repo_path}")
        sys.exit(1)

    analyzer = RepositoryHeatmap(repo_path, reporter, include_merges=include_merges)
    analysis_error = None

    try:
        analyzer.analyze_repository()
    except Exception as e:
        analysis_error = str(e)
        reporter.error(f"Analysis failed: {analysis_error}")
        if verbose:
            import traceback

            traceback.print_exc()
        if not serve:
            sys.exit(1)

    if analysis_error is None:
        if output:
            reporter.stage_start("Export", "Writing heatmap data...")
            size = analyzer.export(output)
            reporter.stage_complete(
                "Export", {"File": output, "Size": f"{size:,} bytes"}
            )

            if analyzer.warnings:
                warnings_path = os.path.splitext(output)[0] + "_warnings.txt"
                analyzer.write_warnings(warnings_path)
                reporter.warning(f"Skipped lines logged to {warnings_path}")

        summary_stats = {
            "Repository": repo_path,
            "Lines processed": f"{analyzer.metrics.lines_processed:,}",
            "Files tracked": f"{analyzer.metrics.unique_files:,}",
            "Lines skipped": f"{analyzer.metrics.lines_skipped:,}",
            "Total touches": f"{analyzer.metrics.root_value:,}",
            "Generated at": datetime.now(timezone.utc).isoformat(),
        }
        if output:
            summary_stats["Output"] = output
        reporter.summary(summary_stats)

    if serve:
        serve_heatmap(
            analyzer.data,
            host=host,
            port=port,
            error=analysis_error,
            html_path=html_path,
            reporter=reporter,
        )


if __name__ == "__main__":
    main()
