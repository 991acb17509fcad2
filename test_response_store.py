import io
import json

import pytest
from pydantic import ValidationError

import response_store
from response_store import (
    ChunkedSource,
    EmbeddedSource,
    FileSource,
    QAEntry,
    ResponseStore,
    ResponseStoreProvider,
    S3Source,
    StoreLoadError,
    build_keyword_index,
    build_response_source,
    merge_documents,
    parse_document,
    tokenize,
)


def write_json(path, data):
    path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
    return path


OPTIMIZED = {
    "responses": {
        "q1": {"question": "عاصمة مصر", "answer": "القاهرة"},
        "q2": {"question": "عاصمة فرنسا", "answer": "باريس", "category": "geo"},
    },
    "keywords": {"عاصمة": ["q1", "q2"], "مصر": ["q1"], "فرنسا": ["q2", "q9"]},
    "categories": {"capitals": ["q1", "q2"]},
}


def test_tokenize_drops_short_words_and_punctuation():
    assert tokenize("ما عاصمة مصر؟") == ["عاصمة", "مصر"]
    assert tokenize("hello, hello world!") == ["hello", "world"]
    assert tokenize("a an") == []


def test_tokenize_keeps_combining_marks():
    assert tokenize("हिंदी भाषा क्या") == ["हिंदी", "भाषा", "क्या"]
    assert tokenize("مُحَمَّد رَسُولُ، اللَّهِ") == ["مُحَمَّد", "رَسُولُ", "اللَّهِ"]


def test_parse_flat_mapping():
    document = parse_document({"عاصمة مصر": "القاهرة", "broken": 3})
    assert list(document.entries) == ["عاصمة مصر"]
    assert document.entries["عاصمة مصر"].answer == "القاهرة"
    assert document.keywords is None


def test_parse_list_skips_incomplete_items():
    document = parse_document(
        [
            {"question": "What is HTTP", "answer": "A protocol"},
            {"question": "No answer"},
            {"question": "What is DNS", "answer": "Name lookup", "category": "net"},
        ]
    )
    assert list(document.entries) == ["0", "2"]
    assert document.entries["2"].category == "net"


def test_parse_optimized_document_applies_categories():
    document = parse_document(OPTIMIZED)
    assert document.entries["q1"].category == "capitals"
    assert document.entries["q2"].category == "geo"
    assert document.keywords["عاصمة"] == ["q1", "q2"]


def test_parse_rejects_scalars():
    with pytest.raises(StoreLoadError):
        parse_document("nope")


@pytest.mark.parametrize(
    "data",
    [
        {"responses": {"1": {"question": "q", "answer": "a", "category": 5}}},
        {"responses": {}, "categories": {"x": 5}},
        {"responses": {}, "categories": ["x"]},
        {"responses": {"1": {"question": "q", "answer": "a"}}, "keywords": {"q": "1"}},
    ],
)
def test_parse_rejects_malformed_structure(data):
    with pytest.raises(StoreLoadError):
        parse_document(data)


def test_entries_are_immutable():
    entry = QAEntry(question="q", answer="a")
    with pytest.raises(ValidationError):
        entry.answer = "b"


def test_store_drops_dangling_index_ids():
    document = parse_document(OPTIMIZED)
    store = ResponseStore(document.entries, document.keywords)
    assert store.ids_for("فرنسا") == ("q2",)
    for word in ("عاصمة", "مصر", "فرنسا"):
        assert all(store.get(i) is not None for i in store.ids_for(word))


def test_store_exact_lookup_prefers_first_inserted():
    store = ResponseStore(
        {
            "a": QAEntry(question="Same Question", answer="first"),
            "b": QAEntry(question="same question ", answer="second"),
        }
    )
    assert store.lookup_exact("same question").answer == "first"
    assert store.position("b") == 1
    assert not store.has_index


def test_build_keyword_index():
    entries = {
        "1": QAEntry(question="من مخترع الهاتف", answer="بيل"),
        "2": QAEntry(question="من مخترع الطائرة؟", answer="رايت"),
    }
    index = build_keyword_index(entries)
    assert index["مخترع"] == ["1", "2"]
    assert index["الطائرة"] == ["2"]
    assert "من" not in index


def test_merge_documents_unions_keywords_and_overrides_entries():
    first = parse_document(
        {
            "responses": {"1": {"question": "a question", "answer": "old"}},
            "keywords": {"question": ["1"]},
        }
    )
    second = parse_document(
        {
            "responses": {
                "1": {"question": "a question", "answer": "new"},
                "2": {"question": "another question", "answer": "two"},
            },
            "keywords": {"question": ["2", "1"], "another": ["2"]},
        }
    )
    merged = merge_documents([first, second])
    assert merged.entries["1"].answer == "new"
    assert merged.keywords["question"] == ["1", "2"]
    assert merged.keywords["another"] == ["2"]


def test_merge_of_flat_documents_has_no_index():
    merged = merge_documents([parse_document({"a": "1"}), parse_document({"b": "2"})])
    assert merged.keywords is None
    assert list(merged.entries) == ["a", "b"]


def test_file_source_reads_document(tmp_path):
    path = write_json(tmp_path / "responses.json", OPTIMIZED)
    document = FileSource(path).load()
    assert len(document.entries) == 2


def test_file_source_errors(tmp_path):
    with pytest.raises(StoreLoadError):
        FileSource(tmp_path / "missing.json").load()
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(StoreLoadError):
        FileSource(broken).load()


def test_chunked_source_merges_existing_chunks(tmp_path):
    write_json(tmp_path / "chunk_1.json", {"question one": "1"})
    (tmp_path / "chunk_2.json").write_text("{oops", encoding="utf-8")
    write_json(tmp_path / "chunk_3.json", {"question three": "3"})
    source = ChunkedSource(
        [tmp_path / "chunk_1.json", tmp_path / "chunk_2.json", tmp_path / "chunk_3.json", tmp_path / "chunk_4.json"],
        primary=tmp_path / "mega.json",
    )
    document = source.load()
    assert list(document.entries) == ["question one", "question three"]


def test_chunked_source_prefers_primary_file(tmp_path):
    write_json(tmp_path / "chunk_1.json", {"question one": "1"})
    write_json(tmp_path / "mega.json", OPTIMIZED)
    document = ChunkedSource([tmp_path / "chunk_1.json"], primary=tmp_path / "mega.json").load()
    assert list(document.entries) == ["q1", "q2"]


def test_chunked_source_without_chunks_fails(tmp_path):
    with pytest.raises(StoreLoadError):
        ChunkedSource([tmp_path / "nothing.json"]).load()


class FakeS3Client:
    def __init__(self, payload):
        self.payload = payload
        self.calls = []

    def get_object(self, Bucket, Key):
        self.calls.append((Bucket, Key))
        return {"Body": io.BytesIO(self.payload)}


class FakeBoto3:
    def __init__(self, client):
        self._client = client

    def client(self, service, region_name=None):
        assert service == "s3"
        return self._client


def test_s3_source_reads_object(monkeypatch):
    client = FakeS3Client(json.dumps(OPTIMIZED).encode("utf-8"))
    monkeypatch.setattr(response_store, "boto3", FakeBoto3(client))
    document = S3Source("bucket", "data/responses.json", "eu-west-1").load()
    assert client.calls == [("bucket", "data/responses.json")]
    assert document.entries["q1"].answer == "القاهرة"


def test_s3_source_rejects_bad_json(monkeypatch):
    monkeypatch.setattr(response_store, "boto3", FakeBoto3(FakeS3Client(b"{bad")))
    with pytest.raises(StoreLoadError):
        S3Source("bucket", "key").load()


def test_build_response_source_selection(tmp_path):
    assert isinstance(build_response_source("embedded"), EmbeddedSource)
    assert isinstance(build_response_source("FILE", file_path="x.json"), FileSource)
    chunks = build_response_source("chunks", chunk_dir=str(tmp_path), chunk_files=["a.json"], mega_file="m.json")
    assert chunks.paths == [tmp_path / "a.json"]
    assert chunks.primary == tmp_path / "m.json"
    assert isinstance(build_response_source("s3", s3_bucket="b", s3_key="k"), S3Source)
    with pytest.raises(ValueError):
        build_response_source("s3")
    with pytest.raises(ValueError):
        build_response_source("redis")


def test_provider_loads_once(tmp_path):
    path = write_json(tmp_path / "responses.json", OPTIMIZED)
    provider = ResponseStoreProvider(FileSource(path))
    assert provider.peek() is None
    store = provider.get()
    path.unlink()
    assert provider.get() is store
    assert provider.peek() is store


def test_provider_does_not_cache_failed_load(tmp_path):
    path = tmp_path / "responses.json"
    provider = ResponseStoreProvider(FileSource(path))
    assert provider.get().is_empty
    assert provider.peek() is None
    write_json(path, OPTIMIZED)
    assert len(provider.get()) == 2


def test_provider_fallback_to_embedded(tmp_path):
    provider = ResponseStoreProvider(FileSource(tmp_path / "missing.json"), fallback_to_embedded=True)
    store = provider.get()
    assert store.source == "embedded"
    assert store.lookup_exact("عاصمة مصر") is not None
    assert provider.peek() is None


def test_provider_builds_index_for_flat_sources():
    indexed = ResponseStoreProvider(EmbeddedSource()).get()
    flat = ResponseStoreProvider(EmbeddedSource(), build_index=False).get()
    assert indexed.has_index
    assert len(indexed.ids_for("عاصمة")) == 6
    assert not flat.has_index
    assert len(indexed) == len(flat)


def test_provider_keeps_precomputed_index(tmp_path):
    path = write_json(tmp_path / "responses.json", OPTIMIZED)
    store = ResponseStoreProvider(FileSource(path)).get()
    assert store.keyword_count == 3
    assert store.ids_for("الطائرة") == ()


def test_merge_keeps_entries_from_every_list_document():
    first = parse_document([{"question": "What is HTTP", "answer": "A protocol"}])
    second = parse_document([{"question": "What is DNS", "answer": "Name lookup"}])
    merged = merge_documents([first, second])
    assert [entry.answer for entry in merged.entries.values()] == ["A protocol", "Name lookup"]
    assert list(merged.entries) == ["1.0", "2.0"]


def test_chunked_source_merges_list_chunks(tmp_path):
    write_json(tmp_path / "chunk_1.json", [{"question": "What is HTTP", "answer": "A protocol"}])
    write_json(tmp_path / "chunk_2.json", [{"question": "What is DNS", "answer": "Name lookup"}])
    source = ChunkedSource([tmp_path / "chunk_1.json", tmp_path / "chunk_2.json"])
    assert len(ResponseStoreProvider(source).get()) == 2


def test_chunked_source_skips_malformed_chunk(tmp_path):
    write_json(tmp_path / "chunk_1.json", {"عاصمة مصر": "القاهرة"})
    write_json(tmp_path / "chunk_2.json", {"responses": {}, "categories": {"x": 5}})
    source = ChunkedSource([tmp_path / "chunk_1.json", tmp_path / "chunk_2.json"])
    store = ResponseStoreProvider(source).get()
    assert len(store) == 1
    assert store.lookup_exact("عاصمة مصر").answer == "القاهرة"


def test_provider_treats_malformed_document_as_unavailable(tmp_path):
    path = write_json(tmp_path / "responses.json", {"responses": {"1": {"question": "q", "answer": "a", "category": 5}}})
    provider = ResponseStoreProvider(FileSource(path))
    assert provider.get().is_empty
    assert provider.peek() is None
