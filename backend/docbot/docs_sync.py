#!/usr/bin/env python3
"""Refresh the documentation corpus and re-index it for the assistant.

Steps:
  1. Clone or pull the docs repository, then check out its latest tag
  2. Convert Markdown files to .txt
  3. Convert PDFs, images and CSVs in the manual folder to .txt
  4. Upload every .txt file and attach it to a new vector store
  5. Create or update the assistant with that vector store
  6. Persist the vector store id for later runs

Examples:
  python docs_sync.py --reupload
  python docs_sync.py --reuse
"""

from __future__ import annotations

import argparse
import json
import logging
import re
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, TypeVar

import requests

from attachment_extractor import IMAGE_EXTENSIONS, PDF_EXTENSIONS, file_to_text
from bot_config import DocsConfig, OpenAIConfig, load_config
from events import (
    EventEmitter,
    get_default_emitter,
    COMPONENT_DOCS_SYNC,
    EVENT_ERROR,
    EVENT_LOG,
    EVENT_PROGRESS,
    EVENT_RESULT,
    EVENT_STATUS,
)

A = COMPONENT_DOCS_SYNC
T = TypeVar("T")

DEFAULT_TIMEOUT = 60
GITHUB_API = "https://api.github.com"
NON_TEXT_EXTENSIONS = PDF_EXTENSIONS | IMAGE_EXTENSIONS | {".csv"}
MARKDOWN_SYNTAX = re.compile(r"[#_*`~>+-]")
ASSISTANT_DESCRIPTION = (
    "Provides help to users, developers and operators with examples from the documentation."
)
ASSISTANT_INSTRUCTIONS = (
    "You are an expert in this project's documentation. Answer questions clearly and "
    "provide reference links to the docs without including any source annotations or "
    "citations. If the question has a straight-up answer, be concise and try not to "
    "exceed 1900 characters."
)


# ── git ──────────────────────────────────────────────────────────

def _run(cmd: list[str], cwd: str | None = None) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(cmd, cwd=cwd, capture_output=True, text=True)
    except FileNotFoundError as e:
        # Normalize missing executable into a non-zero CompletedProcess
        return subprocess.CompletedProcess(args=cmd, returncode=127, stdout="", stderr=str(e))


def _git(args: list[str], cwd: str | None = None) -> str:
    res = _run(["git", *args], cwd=cwd)
    if res.returncode != 0:
        raise RuntimeError(f"git {' '.join(args)} failed: {(res.stderr or res.stdout).strip()}")
    return res.stdout


def latest_tag(tags_repo: str) -> str | None:
    """Name of the newest tag of an "owner/repo" on GitHub, if any."""
    resp = requests.get(f"{GITHUB_API}/repos/{tags_repo}/tags", timeout=DEFAULT_TIMEOUT)
    resp.raise_for_status()
    tags = resp.json()
    if isinstance(tags, list) and tags:
        return tags[0].get("name")
    return None


def _github_repo(repo_url: str) -> str | None:
    m = re.search(r"github\.com[/:]([^/]+/[^/]+?)(?:\.git)?/?$", repo_url)
    return m.group(1) if m else None


def update_docs_repo(
    repo_url: str,
    local_path: str,
    tags_repo: str = "",
    em: EventEmitter | None = None,
) -> None:
    """Clone the docs repo, or fetch and pull it when already present."""
    em = em or get_default_emitter()
    if Path(local_path, ".git").exists():
        em.emit(A, EVENT_PROGRESS, "update_repo", "Pulling latest changes...")
        _git(["fetch", "--tags"], cwd=local_path)
        pull = _run(["git", "pull"], cwd=local_path)
        if pull.returncode != 0:
            # Detached at a tag from an earlier run; fetch already brought new tags.
            em.emit(A, EVENT_LOG, "update_repo", f"git pull skipped: {pull.stderr.strip()}")
    else:
        em.emit(A, EVENT_PROGRESS, "update_repo", f"Cloning {repo_url}...")
        _git(["clone", repo_url, local_path])

    tags_repo = tags_repo or _github_repo(repo_url) or ""
    if not tags_repo:
        return
    try:
        tag = latest_tag(tags_repo)
    except requests.RequestException as e:
        em.emit(A, EVENT_ERROR, "update_repo",
                f"Error fetching latest tag, using current branch: {e}")
        return
    if tag:
        em.emit(A, EVENT_PROGRESS, "update_repo", f"Latest tag found: {tag}")
        _git(["checkout", tag], cwd=local_path)
    else:
        em.emit(A, EVENT_LOG, "update_repo", "No tags found, using the current branch.")


# ── conversion ───────────────────────────────────────────────────

def convert_md_to_txt(root: str | Path) -> list[str]:
    """Write a syntax-stripped .txt next to every .md file under ``root``."""
    txt_files = []
    for md in sorted(Path(root).rglob("*.md")):
        if ".git" in md.parts or not md.is_file():
            continue
        plain = MARKDOWN_SYNTAX.sub("", md.read_text(errors="ignore"))
        txt = md.with_suffix(".txt")
        txt.write_text(plain)
        txt_files.append(str(txt))
    return txt_files


def convert_non_text_to_txt(root: str | Path, em: EventEmitter | None = None) -> list[str]:
    """Convert PDFs, images and CSVs to .txt; existing .txt files are kept."""
    em = em or get_default_emitter()
    created = []
    for path in sorted(Path(root).rglob("*")):
        if not path.is_file() or path.suffix.lower() not in NON_TEXT_EXTENSIONS:
            continue
        txt = path.with_suffix(".txt")
        if txt.exists():
            continue
        try:
            text = file_to_text(path)
        except Exception as e:
            em.emit(A, EVENT_ERROR, "convert", f"Failed to convert {path}: {e}")
            continue
        if text.strip():
            txt.write_text(text)
            created.append(str(txt))
            em.emit(A, EVENT_LOG, "convert", f"Created text file: {txt}")
    return created


def gather_text_files(*roots: str | Path) -> list[str]:
    found: list[str] = []
    for root in roots:
        if not Path(root).is_dir():
            continue
        found.extend(
            str(p) for p in sorted(Path(root).rglob("*.txt"))
            if p.is_file() and ".git" not in p.parts
        )
    return sorted(set(found))


# ── hosted assistant / vector store ──────────────────────────────

def retry(fn: Callable[[], T], context: str, *, max_attempts: int = 3, delay: float = 2.0,
          em: EventEmitter | None = None) -> T:
    em = em or get_default_emitter()
    attempt = 0
    while True:
        try:
            return fn()
        except requests.RequestException as e:
            attempt += 1
            detail = str(e)
            if e.response is not None:
                detail = f"{e.response.status_code} {e.response.text[:300]}"
            em.emit(A, EVENT_ERROR, "retry", f"Attempt {attempt} failed for {context}: {detail}")
            if attempt >= max_attempts:
                raise
            time.sleep(delay)


class AssistantAdmin:
    """File upload, vector store and assistant management over REST."""

    def __init__(self, cfg: OpenAIConfig, *, max_attempts: int = 3, retry_delay: float = 2.0,
                 em: EventEmitter | None = None) -> None:
        self.cfg = cfg
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.em = em or get_default_emitter()
        self.session = requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {cfg.api_key}",
            "OpenAI-Beta": "assistants=v2",
        })

    def _call(self, method: str, path: str, context: str, **kwargs: Any) -> dict:
        def call() -> dict:
            resp = self.session.request(method, f"{self.cfg.api_base}{path}",
                                        timeout=DEFAULT_TIMEOUT, **kwargs)
            resp.raise_for_status()
            return resp.json()

        return retry(call, context, max_attempts=self.max_attempts,
                     delay=self.retry_delay, em=self.em)

    def upload_file(self, file_path: str) -> dict:
        def call() -> dict:
            with open(file_path, "rb") as fh:
                resp = self.session.post(
                    f"{self.cfg.api_base}/files",
                    files={"file": (Path(file_path).name, fh)},
                    data={"purpose": "assistants"},
                    timeout=DEFAULT_TIMEOUT,
                )
            resp.raise_for_status()
            return resp.json()

        return retry(call, f"uploading file at {file_path}", max_attempts=self.max_attempts,
                     delay=self.retry_delay, em=self.em)

    def create_vector_store(self, name: str) -> str:
        data = self._call("POST", "/vector_stores", f'creating vector store "{name}"',
                          json={"name": name})
        return data["id"]

    def add_file_to_vector_store(self, vector_store_id: str, file_id: str) -> dict:
        return self._call("POST", f"/vector_stores/{vector_store_id}/files",
                          f"adding file id {file_id} to vector store {vector_store_id}",
                          json={"file_id": file_id})

    def create_or_update_assistant(self, vector_store_id: str, name: str) -> dict:
        body = {
            "name": name,
            "description": ASSISTANT_DESCRIPTION,
            "model": self.cfg.assistant_model,
            "instructions": ASSISTANT_INSTRUCTIONS,
            "tools": [{"type": "file_search"}],
            "tool_resources": {"file_search": {"vector_store_ids": [vector_store_id]}},
            "metadata": {},
            "top_p": 1.0,
            "temperature": 1.0,
            "response_format": "auto",
        }
        if self.cfg.assistant_id:
            return self._call("POST", f"/assistants/{self.cfg.assistant_id}",
                              f"updating assistant {self.cfg.assistant_id}", json=body)
        return self._call("POST", "/assistants",
                          f"creating assistant with vector store {vector_store_id}", json=body)


# ── job ──────────────────────────────────────────────────────────

@dataclass
class SyncResult:
    vector_store_id: str
    assistant_id: str | None = None
    uploaded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def _index_files(admin: AssistantAdmin, files: list[str], store_name: str,
                 em: EventEmitter) -> tuple[str, list[str], list[str]]:
    file_ids: list[str] = []
    uploaded: list[str] = []
    failed: list[str] = []
    for path in files:
        try:
            file_ids.append(admin.upload_file(path)["id"])
            uploaded.append(path)
        except requests.RequestException as e:
            em.emit(A, EVENT_ERROR, "upload", f"Error uploading {path}: {e}")
            failed.append(path)

    vector_store_id = admin.create_vector_store(store_name)
    em.emit(A, EVENT_PROGRESS, "vector_store", f"Created vector store with ID: {vector_store_id}")

    for file_id in file_ids:
        try:
            admin.add_file_to_vector_store(vector_store_id, file_id)
        except requests.RequestException as e:
            em.emit(A, EVENT_ERROR, "vector_store", f"Error adding file id {file_id}: {e}")
    return vector_store_id, uploaded, failed


def sync_docs(
    docs: DocsConfig,
    admin: AssistantAdmin,
    reupload: bool,
    em: EventEmitter | None = None,
) -> SyncResult:
    """Run the refresh job; reuse the persisted vector store unless ``reupload``."""
    em = em or get_default_emitter()
    id_path = Path(docs.vector_store_id_path)

    if not reupload and id_path.is_file() and id_path.read_text().strip():
        result = SyncResult(vector_store_id=id_path.read_text().strip())
        em.emit(A, EVENT_PROGRESS, "vector_store",
                f"Using existing vector store id: {result.vector_store_id}")
    else:
        if not reupload:
            em.emit(A, EVENT_PROGRESS, "vector_store",
                    "No existing vector store id found. Proceeding with file upload.")
        em.emit(A, EVENT_STATUS, "update_repo", "Updating docs from GitHub...")
        if docs.repo_url:
            update_docs_repo(docs.repo_url, docs.local_path, docs.tags_repo, em)
        md_files = convert_md_to_txt(docs.local_path) if Path(docs.local_path).is_dir() else []
        em.emit(A, EVENT_PROGRESS, "convert", f"Converted {len(md_files)} Markdown file(s)")
        if Path(docs.manual_folder).is_dir():
            converted = convert_non_text_to_txt(docs.manual_folder, em)
            em.emit(A, EVENT_PROGRESS, "convert", f"Converted {len(converted)} non-text file(s)")

        files = gather_text_files(docs.local_path, docs.manual_folder)
        em.emit(A, EVENT_STATUS, "upload", f"Uploading {len(files)} text file(s)")
        store_id, uploaded, failed = _index_files(admin, files, docs.store_name, em)
        result = SyncResult(vector_store_id=store_id, uploaded=uploaded, failed=failed)

        id_path.parent.mkdir(parents=True, exist_ok=True)
        id_path.write_text(store_id)
        em.emit(A, EVENT_LOG, "vector_store", f"Vector store ID saved to {id_path}")

    assistant = admin.create_or_update_assistant(result.vector_store_id, docs.assistant_name)
    result.assistant_id = assistant.get("id")
    em.emit(A, EVENT_RESULT, "assistant", f"Assistant updated with ID: {result.assistant_id}")
    return result


def _ask_yes_no(question: str) -> bool:
    answer = input(question).strip().lower()
    return answer in ("y", "yes")


def main() -> None:
    parser = argparse.ArgumentParser(description="Refresh the docs corpus and re-index it")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--reupload", dest="reupload", action="store_true", default=None,
                       help="Re-upload all files into a new vector store")
    group.add_argument("--reuse", dest="reupload", action="store_false",
                       help="Reuse the persisted vector store id")
    parser.set_defaults(reupload=None)
    parser.add_argument("--env-file", default=None, help="Path to a .env file")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    cfg = load_config(args.env_file)
    if not cfg.openai.api_key:
        raise SystemExit("Missing required environment variables: OPENAI_API_KEY")

    reupload = args.reupload
    if reupload is None:
        if not sys.stdin.isatty():
            raise SystemExit("No TTY for the prompt. Pass --reupload or --reuse.")
        reupload = _ask_yes_no("Do you want to re-upload files to the vector store? (y/n): ")

    admin = AssistantAdmin(cfg.openai, max_attempts=cfg.reasoner.max_attempts,
                           retry_delay=cfg.reasoner.retry_delay)
    result = sync_docs(cfg.docs, admin, reupload)
    print(json.dumps({
        "vector_store_id": result.vector_store_id,
        "assistant_id": result.assistant_id,
        "uploaded": len(result.uploaded),
        "failed": result.failed,
    }, indent=2))


if __name__ == "__main__":
    main()
