import requests
import pytest

from bot_config import DocsConfig, OpenAIConfig
from docs_sync import (
    AssistantAdmin,
    convert_md_to_txt,
    convert_non_text_to_txt,
    gather_text_files,
    retry,
    sync_docs,
    update_docs_repo,
)
from events import NoOpEventEmitter


class FakeAdmin:
    def __init__(self, fail_uploads=()):
        self.fail_uploads = set(fail_uploads)
        self.uploaded = []
        self.stores = []
        self.attached = []
        self.assistant_calls = []

    def upload_file(self, path):
        if path in self.fail_uploads:
            raise requests.ConnectionError("reset")
        self.uploaded.append(path)
        return {"id": f"file_{len(self.uploaded)}"}

    def create_vector_store(self, name):
        self.stores.append(name)
        return "vs_new"

    def add_file_to_vector_store(self, vector_store_id, file_id):
        self.attached.append((vector_store_id, file_id))
        return {}

    def create_or_update_assistant(self, vector_store_id, name):
        self.assistant_calls.append((vector_store_id, name))
        return {"id": "asst_1"}


def _docs(tmp_path, **kwargs):
    docs = tmp_path / "docs"
    manual = tmp_path / "manual"
    docs.mkdir()
    manual.mkdir()
    return DocsConfig(
        local_path=str(docs),
        manual_folder=str(manual),
        vector_store_id_path=str(tmp_path / "vectorStoreId.txt"),
        **kwargs,
    )


def test_markdown_is_stripped_to_plain_text(tmp_path):
    (tmp_path / "guide").mkdir()
    md = tmp_path / "guide" / "setup.md"
    md.write_text("# Setup\n\n- run `make` > log\n**bold** _it_ ~x~ a+b\n")

    created = convert_md_to_txt(tmp_path)

    assert created == [str(tmp_path / "guide" / "setup.txt")]
    assert (tmp_path / "guide" / "setup.txt").read_text() == " Setup\n\n run make  log\nbold it x ab\n"


def test_non_text_conversion_skips_existing_txt(tmp_path, monkeypatch):
    (tmp_path / "manual.pdf").write_bytes(b"%PDF")
    (tmp_path / "scan.png").write_bytes(b"png")
    (tmp_path / "scan.txt").write_text("already converted")
    (tmp_path / "archive.zip").write_bytes(b"zip")
    converted = []

    def fake_file_to_text(path):
        converted.append(path.name)
        return f"text of {path.name}"

    monkeypatch.setattr("docs_sync.file_to_text", fake_file_to_text)

    created = convert_non_text_to_txt(tmp_path, NoOpEventEmitter())

    assert converted == ["manual.pdf"]
    assert created == [str(tmp_path / "manual.txt")]
    assert (tmp_path / "scan.txt").read_text() == "already converted"


def test_gather_text_files_skips_git_and_missing_roots(tmp_path):
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "HEAD.txt").write_text("x")
    (tmp_path / "a.txt").write_text("a")
    (tmp_path / "sub").mkdir()
    (tmp_path / "sub" / "b.txt").write_text("b")

    found = gather_text_files(tmp_path, tmp_path / "does-not-exist")

    assert found == sorted([str(tmp_path / "a.txt"), str(tmp_path / "sub" / "b.txt")])


def test_reupload_indexes_all_text_and_persists_store_id(tmp_path):
    docs = _docs(tmp_path)
    (tmp_path / "docs" / "intro.md").write_text("# Intro")
    (tmp_path / "manual" / "faq.txt").write_text("faq")
    admin = FakeAdmin(fail_uploads={str(tmp_path / "manual" / "faq.txt")})

    result = sync_docs(docs, admin, reupload=True, em=NoOpEventEmitter())

    assert admin.uploaded == [str(tmp_path / "docs" / "intro.txt")]
    assert result.failed == [str(tmp_path / "manual" / "faq.txt")]
    assert admin.attached == [("vs_new", "file_1")]
    assert admin.assistant_calls == [("vs_new", docs.assistant_name)]
    assert result.vector_store_id == "vs_new"
    assert result.assistant_id == "asst_1"
    assert (tmp_path / "vectorStoreId.txt").read_text() == "vs_new"


def test_reuse_keeps_persisted_store(tmp_path):
    docs = _docs(tmp_path)
    (tmp_path / "vectorStoreId.txt").write_text("vs_old\n")
    admin = FakeAdmin()

    result = sync_docs(docs, admin, reupload=False, em=NoOpEventEmitter())

    assert result.vector_store_id == "vs_old"
    assert admin.uploaded == [] and admin.stores == []
    assert admin.assistant_calls == [("vs_old", docs.assistant_name)]


def test_reuse_without_persisted_id_uploads(tmp_path):
    docs = _docs(tmp_path)
    (tmp_path / "docs" / "a.txt").write_text("a")
    admin = FakeAdmin()

    result = sync_docs(docs, admin, reupload=False, em=NoOpEventEmitter())

    assert result.vector_store_id == "vs_new"
    assert admin.uploaded == [str(tmp_path / "docs" / "a.txt")]


def test_update_docs_repo_clones_and_checks_out_latest_tag(tmp_path, monkeypatch):
    commands = []

    def fake_git(args, cwd=None):
        commands.append(args)
        return ""

    monkeypatch.setattr("docs_sync._git", fake_git)
    monkeypatch.setattr("docs_sync.latest_tag", lambda repo: "v1.2.0" if repo == "org/docs" else None)

    update_docs_repo("https://github.com/org/docs.git", str(tmp_path / "checkout"),
                     em=NoOpEventEmitter())

    assert commands == [
        ["clone", "https://github.com/org/docs.git", str(tmp_path / "checkout")],
        ["checkout", "v1.2.0"],
    ]


def test_retry_reraises_after_max_attempts():
    attempts = []

    def always_fails():
        attempts.append(1)
        raise requests.ConnectionError("down")

    with pytest.raises(requests.ConnectionError):
        retry(always_fails, "test call", max_attempts=3, delay=0, em=NoOpEventEmitter())
    assert len(attempts) == 3


def test_admin_updates_existing_assistant(monkeypatch):
    admin = AssistantAdmin(
        OpenAIConfig(api_key="sk-test", api_base="https://api.test/v1", assistant_id="asst_9"),
        retry_delay=0,
        em=NoOpEventEmitter(),
    )
    sent = {}

    class FakeResponse:
        def raise_for_status(self):
            pass

        def json(self):
            return {"id": "asst_9"}

    def fake_request(method, url, timeout=None, **kwargs):
        sent.update(method=method, url=url, body=kwargs.get("json"))
        return FakeResponse()

    monkeypatch.setattr(admin.session, "request", fake_request)

    admin.create_or_update_assistant("vs_1", "Docs Assistant")

    assert sent["method"] == "POST"
    assert sent["url"] == "https://api.test/v1/assistants/asst_9"
    assert sent["body"]["tools"] == [{"type": "file_search"}]
    assert sent["body"]["tool_resources"] == {"file_search": {"vector_store_ids": ["vs_1"]}}
