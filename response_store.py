"""
Question/answer storage for the Messenger Q&A bot.

Parses the JSON document shapes the bot has been deployed with (flat
``{question: answer}`` tables, optimized ``{responses, keywords, categories}``
documents and plain ``[{question, answer}]`` lists), merges chunked documents,
derives the keyword index and exposes the pluggable data sources the webhook
selects through configuration.
"""

from __future__ import annotations

import json
import logging
import unicodedata
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, ValidationError

try:
    import boto3
    from botocore.exceptions import BotoCoreError, ClientError
except ImportError:  # pragma: no cover - boto3 optional for local runs
    boto3 = None
    BotoCoreError = ClientError = None

logger = logging.getLogger(__name__)

MIN_KEYWORD_LENGTH = 3


# ---------------------------------------------------------------------------
# Built-in table
# ---------------------------------------------------------------------------
EMBEDDED_RESPONSES: Dict[str, str] = {
    # Greetings
    "مرحبا": "مرحباً بك! كيف يمكنني مساعدتك اليوم؟",
    "السلام عليكم": "وعليكم السلام ورحمة الله وبركاته! أهلاً وسهلاً",
    "صباح الخير": "صباح الخير! أتمنى لك يوماً مليئاً بالنجاح",
    "مساء الخير": "مساء الخير! كيف كان يومك؟",
    "كيف حالك": "الحمد لله بخير! شكراً لسؤالك، كيف حالك أنت؟",
    "كيفك": "الحمد لله تمام! وانت كيفك؟",
    "أهلا": "أهلاً وسهلاً! مرحباً بك معنا",
    "تحدث": "أهلاً! عن ماذا تريد أن نتحدث؟ اسأل عن أي شيء",
    "شكرا": "عفواً! أي وقت، أنا هنا للمساعدة دائماً",
    # About the bot
    "ما اسمك": "أنا مساعدك الذكي! يمكنك أن تناديني 'المساعد'",
    "من أنت": "أنا بوت ذكي مصمم لمساعدتك والإجابة على أسئلتك",
    "ماذا تفعل": "أنا هنا لأساعدك! اسأل عن أي شيء تريد معرفته",
    # Capitals
    "عاصمة مصر": "عاصمة مصر هي القاهرة، أكبر مدينة في الوطن العربي",
    "عاصمة السعودية": "عاصمة المملكة العربية السعودية هي الرياض",
    "عاصمة الإمارات": "عاصمة دولة الإمارات العربية المتحدة هي أبو ظبي",
    "عاصمة فرنسا": "عاصمة فرنسا هي باريس، مدينة النور",
    "عاصمة ألمانيا": "عاصمة ألمانيا هي برلين",
    "عاصمة إنجلترا": "عاصمة إنجلترا هي لندن",
    # Inventions
    "مخترع الهاتف": "مخترع الهاتف هو ألكسندر جراهام بيل في عام 1876",
    "مخترع الكهرباء": "توماس أديسون يُعتبر من رواد اختراعات الكهرباء",
    "مخترع الطائرة": "الأخوان رايت هما مخترعا الطائرة في عام 1903",
    "مخترع السيارة": "كارل بنز اخترع أول سيارة في عام 1885",
    # General knowledge
    "كم قارة": "عدد قارات العالم سبع قارات",
    "أكبر محيط": "المحيط الهادئ هو أكبر محيطات العالم",
    "أطول نهر": "نهر النيل هو أطول نهر في العالم",
    "أعلى جبل": "جبل إيفرست هو أعلى جبل في العالم",
    "أكبر دولة": "روسيا هي أكبر دولة في العالم من حيث المساحة",
    # Sports
    "كأس العالم": "كأس العالم FIFA هو أهم بطولة كرة قدم في العالم",
    "أولمبياد": "الألعاب الأولمبية تقام كل أربع سنوات",
    # Technology
    "ما هو الذكاء الاصطناعي": "الذكاء الاصطناعي هو تقنية تمكن الحاسوب من محاكاة التفكير البشري",
    "ما هو الإنترنت": "الإنترنت هو شبكة عالمية تربط مليارات الأجهزة حول العالم",
}


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------
def normalize_text(text: str) -> str:
    return text.lower().strip()


def strip_punctuation(word: str) -> str:
    # Only Unicode punctuation (P*) goes; combining marks stay part of the word.
    return "".join(ch for ch in word if not unicodedata.category(ch).startswith("P"))


def tokenize(text: str) -> List[str]:
    """Split on whitespace, strip punctuation and keep words longer than two
    characters, de-duplicated in order of first appearance."""
    words: List[str] = []
    for raw in text.split():
        word = strip_punctuation(raw)
        if len(word) >= MIN_KEYWORD_LENGTH and word not in words:
            words.append(word)
    return words


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------
class QAEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    question: str
    answer: str
    category: Optional[str] = None


class StoreLoadError(Exception):
    """Raised by a data source when its document cannot be read or parsed."""


KeywordIndex = Dict[str, Tuple[str, ...]]


class ParsedDocument(BaseModel):
    entries: Dict[str, QAEntry]
    keywords: Optional[Dict[str, List[str]]] = None
    # ids are list positions, only unique within this document
    positional: bool = False


class ResponseStore:
    """Read-only view over the loaded entries and their keyword index."""

    def __init__(
        self,
        entries: Dict[str, QAEntry],
        keywords: Optional[Dict[str, Sequence[str]]] = None,
        source: str = "memory",
    ):
        self.source = source
        self._entries: Dict[str, QAEntry] = dict(entries)
        self._positions = {entry_id: pos for pos, entry_id in enumerate(self._entries)}
        self._questions = {
            entry_id: normalize_text(entry.question) for entry_id, entry in self._entries.items()
        }
        self._exact: Dict[str, str] = {}
        for entry_id, question in self._questions.items():
            self._exact.setdefault(question, entry_id)

        self._keywords: Optional[KeywordIndex] = None
        if keywords is not None:
            self._keywords = self._clean_index(keywords)

    def _clean_index(self, keywords: Dict[str, Sequence[str]]) -> KeywordIndex:
        index: KeywordIndex = {}
        dropped = 0
        for word, ids in keywords.items():
            valid: List[str] = []
            for entry_id in ids:
                entry_id = str(entry_id)
                if entry_id not in self._entries:
                    dropped += 1
                    continue
                if entry_id not in valid:
                    valid.append(entry_id)
            if valid:
                index[normalize_text(word)] = tuple(valid)
        if dropped:
            logger.warning("Dropped %d keyword references to unknown entries (%s)", dropped, self.source)
        return index

    @classmethod
    def empty(cls, source: str = "empty") -> "ResponseStore":
        return cls({}, source=source)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    @property
    def is_empty(self) -> bool:
        return not self._entries

    @property
    def has_index(self) -> bool:
        return self._keywords is not None

    @property
    def keyword_count(self) -> int:
        return len(self._keywords or {})

    def get(self, entry_id: str) -> Optional[QAEntry]:
        return self._entries.get(entry_id)

    def items(self) -> Iterable[Tuple[str, QAEntry]]:
        return self._entries.items()

    def question_for(self, entry_id: str) -> str:
        return self._questions[entry_id]

    def position(self, entry_id: str) -> int:
        return self._positions[entry_id]

    def ids_for(self, word: str) -> Tuple[str, ...]:
        if self._keywords is None:
            return ()
        return self._keywords.get(word, ())

    def lookup_exact(self, normalized_question: str) -> Optional[QAEntry]:
        entry_id = self._exact.get(normalized_question)
        return self._entries[entry_id] if entry_id is not None else None


# ---------------------------------------------------------------------------
# Document parsing
# ---------------------------------------------------------------------------
def build_keyword_index(entries: Dict[str, QAEntry]) -> Dict[str, List[str]]:
    index: Dict[str, List[str]] = {}
    for entry_id, entry in entries.items():
        for word in tokenize(normalize_text(entry.question)):
            ids = index.setdefault(word, [])
            if entry_id not in ids:
                ids.append(entry_id)
    return index


def _id_list(ids: Any, field: str) -> List[str]:
    if not isinstance(ids, list):
        raise TypeError(f"{field} values must be lists of ids, got {type(ids).__name__}")
    return [str(i) for i in ids]


def _entry_from_record(record: Any) -> Optional[QAEntry]:
    if not isinstance(record, dict):
        return None
    question = record.get("question")
    answer = record.get("answer")
    if not question or not answer:
        return None
    category = record.get("category")
    return QAEntry(question=str(question), answer=str(answer), category=category)


def parse_document(data: Any) -> ParsedDocument:
    """Turn any supported JSON shape into entries plus an optional index.

    Valid JSON with an unexpected structure (a numeric category, a keyword
    list that is not a list, ...) raises ``StoreLoadError`` like unreadable
    input does.
    """
    if not isinstance(data, (list, dict)):
        raise StoreLoadError(f"Unsupported response document type: {type(data).__name__}")
    try:
        return _parse_document(data)
    except (ValidationError, TypeError, AttributeError, ValueError) as exc:
        raise StoreLoadError(f"Malformed response document: {exc}") from exc


def _parse_document(data: Any) -> ParsedDocument:
    if isinstance(data, list):
        entries: Dict[str, QAEntry] = {}
        for position, record in enumerate(data):
            entry = _entry_from_record(record)
            if entry:
                entries[str(position)] = entry
        return ParsedDocument(entries=entries, positional=True)

    if isinstance(data.get("responses"), dict):
        entries = {}
        for entry_id, record in data["responses"].items():
            entry = _entry_from_record(record)
            if entry:
                entries[str(entry_id)] = entry

        for category, ids in (data.get("categories") or {}).items():
            for entry_id in _id_list(ids, "categories"):
                entry = entries.get(str(entry_id))
                if entry and entry.category is None:
                    entries[str(entry_id)] = entry.model_copy(update={"category": category})

        keywords = data.get("keywords")
        if isinstance(keywords, dict) and keywords:
            return ParsedDocument(
                entries=entries,
                keywords={word: _id_list(ids, "keywords") for word, ids in keywords.items()},
            )
        return ParsedDocument(entries=entries)

    entries = {
        str(question): QAEntry(question=str(question), answer=answer)
        for question, answer in data.items()
        if isinstance(answer, str) and answer
    }
    return ParsedDocument(entries=entries)


def merge_documents(documents: Iterable[ParsedDocument]) -> ParsedDocument:
    """Merge chunk documents. Later chunks override same-id entries, except
    for list chunks, whose position ids are prefixed with the chunk number."""
    entries: Dict[str, QAEntry] = {}
    keywords: Dict[str, List[str]] = {}
    indexed = False
    for number, document in enumerate(documents, start=1):
        if document.positional:
            entries.update(
                (f"{number}.{entry_id}", entry) for entry_id, entry in document.entries.items()
            )
            continue
        entries.update(document.entries)
        if document.keywords is None:
            continue
        indexed = True
        for word, ids in document.keywords.items():
            merged = keywords.setdefault(word, [])
            merged.extend(i for i in ids if i not in merged)
    return ParsedDocument(entries=entries, keywords=keywords if indexed else None)


def _read_json_file(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise StoreLoadError(f"Cannot read {path}: {exc}") from exc


# ---------------------------------------------------------------------------
# Data sources
# ---------------------------------------------------------------------------
class EmbeddedSource:
    name = "embedded"

    def __init__(self, table: Optional[Dict[str, str]] = None):
        self.table = EMBEDDED_RESPONSES if table is None else table

    def load(self) -> ParsedDocument:
        return parse_document(self.table)


class FileSource:
    name = "file"

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def load(self) -> ParsedDocument:
        if not self.path.exists():
            raise StoreLoadError(f"Response file not found: {self.path}")
        return parse_document(_read_json_file(self.path))


class ChunkedSource:
    """Loads the primary optimized file when present, otherwise merges every
    chunk that exists. Broken chunks are skipped."""

    name = "chunks"

    def __init__(self, paths: Sequence[Path | str], primary: Optional[Path | str] = None):
        self.paths = [Path(p) for p in paths]
        self.primary = Path(primary) if primary else None

    def load(self) -> ParsedDocument:
        if self.primary and self.primary.exists():
            logger.info("Found primary response file %s", self.primary)
            return parse_document(_read_json_file(self.primary))

        documents: List[ParsedDocument] = []
        for path in self.paths:
            if not path.exists():
                continue
            try:
                document = parse_document(_read_json_file(path))
            except StoreLoadError as exc:
                logger.warning("Failed to load chunk %s: %s", path.name, exc)
                continue
            logger.info("Loaded chunk %s (%d responses)", path.name, len(document.entries))
            documents.append(document)

        if not documents:
            raise StoreLoadError("No response chunks found")
        return merge_documents(documents)


class S3Source:
    name = "s3"

    def __init__(self, bucket: str, key: str, region: Optional[str] = None):
        self.bucket = bucket
        self.key = key
        self.region = region

    def load(self) -> ParsedDocument:
        if not boto3:
            raise StoreLoadError("boto3 is not installed. Cannot read responses from S3.")
        try:
            client = boto3.client("s3", region_name=self.region)
            obj = client.get_object(Bucket=self.bucket, Key=self.key)
            raw_body = obj["Body"].read()
            data = json.loads(raw_body.decode("utf-8"))
        except (BotoCoreError, ClientError, ValueError) as exc:
            raise StoreLoadError(f"Cannot read s3://{self.bucket}/{self.key}: {exc}") from exc
        return parse_document(data)


def build_response_source(
    kind: str,
    *,
    file_path: Optional[str] = None,
    chunk_dir: str = ".",
    chunk_files: Sequence[str] = (),
    mega_file: Optional[str] = None,
    s3_bucket: Optional[str] = None,
    s3_key: Optional[str] = None,
    region: Optional[str] = None,
):
    kind = (kind or "embedded").strip().lower()
    if kind == "embedded":
        return EmbeddedSource()
    if kind == "file":
        if not file_path:
            raise ValueError("RESPONSES_FILE must be set for the file source")
        return FileSource(file_path)
    if kind == "chunks":
        base = Path(chunk_dir)
        return ChunkedSource(
            [base / name for name in chunk_files],
            primary=base / mega_file if mega_file else None,
        )
    if kind == "s3":
        if not s3_bucket or not s3_key:
            raise ValueError("RESPONSES_S3_BUCKET and RESPONSES_S3_KEY must be set for the s3 source")
        return S3Source(s3_bucket, s3_key, region)
    raise ValueError(f"Unknown response source {kind!r}")


# ---------------------------------------------------------------------------
# Init-once provider
# ---------------------------------------------------------------------------
class ResponseStoreProvider:
    """Owns the process-wide store. Loads it lazily on first use.

    Two first requests racing may both load; the second assignment simply
    replaces the first with an equivalent store. Failed loads are not cached.
    """

    def __init__(self, source, build_index: bool = True, fallback_to_embedded: bool = False):
        self.source = source
        self.build_index = build_index
        self.fallback_to_embedded = fallback_to_embedded
        self._store: Optional[ResponseStore] = None

    def get(self) -> ResponseStore:
        if self._store is not None:
            return self._store

        store = self._load(self.source)
        if store.is_empty:
            if self.fallback_to_embedded and not isinstance(self.source, EmbeddedSource):
                logger.warning("Serving the embedded response table instead")
                return self._load(EmbeddedSource())
            return store

        self._store = store
        return store

    def peek(self) -> Optional[ResponseStore]:
        return self._store

    def _load(self, source) -> ResponseStore:
        logger.info("Loading responses from %s source", source.name)
        try:
            document = source.load()
        except StoreLoadError as exc:
            logger.error("Error loading responses: %s", exc)
            return ResponseStore.empty(source.name)

        keywords = document.keywords
        if keywords is None and self.build_index:
            keywords = build_keyword_index(document.entries)

        store = ResponseStore(document.entries, keywords, source=source.name)
        if store.is_empty:
            logger.error("Response source %s produced no entries", source.name)
        else:
            logger.info(
                "Loaded %d Q&A pairs, %d keywords indexed (%s)",
                len(store),
                store.keyword_count,
                source.name,
            )
        return store
