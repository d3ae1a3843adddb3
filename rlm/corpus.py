# -*- coding: utf-8 -*-

from __future__ import annotations

import copy
import json
import re
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .errors import ConfigurationError


NODE_TYPES = ("section", "heading", "paragraph", "list-item", "image", "table", "header", "footer", "metadata")


def _new_id() -> str:
    return str(uuid.uuid4())


def _matches(query: Optional[str], *texts: Any) -> bool:
    if not query:
        return True
    q = str(query).lower()
    for t in texts:
        if t and q in str(t).lower():
            return True
    return False


class Corpus:
    """
    In-memory corpus collaborator: documents, page nodes, TOC entries, entities, relationships.

    Every read is case-insensitive substring matching in ingestion order and returns copies,
    so sandbox code cannot change what other sessions see. ingest() only appends.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._documents: List[dict] = []
        self._nodes: List[dict] = []
        self._toc: List[dict] = []
        self._entities: List[dict] = []
        self._relationships: List[dict] = []

    # ingestion

    def ingest(self, documents: Iterable[dict]) -> List[dict]:
        if isinstance(documents, dict) or documents is None:
            raise ConfigurationError("documents must be a list of document dicts")
        docs = list(documents)
        problems = []
        for i, doc in enumerate(docs):
            if not isinstance(doc, dict):
                problems.append(f"[{i}] not a dict")
                continue
            if not isinstance(doc.get("pages", []), list):
                problems.append(f"[{i}] pages must be a list")
            if not (doc.get("name") or doc.get("title") or doc.get("id")):
                problems.append(f"[{i}] needs an id, name or title")
        if problems:
            raise ConfigurationError("invalid documents: " + "; ".join(problems))
        return [self._ingest_one(copy.deepcopy(doc)) for doc in docs]

    def _ingest_one(self, doc: dict) -> dict:
        doc_id = str(doc.get("id") or _new_id())
        pages = doc.get("pages") or []
        nodes: List[dict] = []
        for p_idx, page in enumerate(pages):
            page_index = int(page.get("index", p_idx)) if isinstance(page, dict) else p_idx
            raw_nodes = page.get("nodes", []) if isinstance(page, dict) else []
            for n in raw_nodes:
                if isinstance(n, str):
                    n = {"type": "paragraph", "content": n}
                nodes.append(
                    {
                        "id": str(n.get("id") or _new_id()),
                        "type": str(n.get("type") or "paragraph"),
                        "level": n.get("level"),
                        "content": n.get("content") or "",
                        "description": n.get("description"),
                        "page": page_index,
                        "page_id": f"{doc_id}:{page_index}",
                        "document_id": doc_id,
                    }
                )
        toc: List[dict] = []
        for e in doc.get("toc") or []:
            toc.append(
                {
                    "id": str(e.get("id") or _new_id()),
                    "title": e.get("title") or "",
                    "description": e.get("description"),
                    "level": e.get("level") or "l1",
                    "target_page": int(e.get("target_page", e.get("page", 0)) or 0),
                    "parent_id": e.get("parent_id"),
                    "document_id": doc_id,
                }
            )
        entities: List[dict] = []
        for e in doc.get("entities") or []:
            entities.append(
                {
                    "id": str(e.get("id") or _new_id()),
                    "name": e.get("name") or "",
                    "type": e.get("type") or "term",
                    "description": e.get("description"),
                    "page": e.get("page"),
                    "section": e.get("section"),
                    "document_id": doc_id,
                }
            )
        relationships: List[dict] = []
        for r in doc.get("relationships") or []:
            relationships.append(
                {
                    "id": str(r.get("id") or _new_id()),
                    "type": r.get("type") or "references",
                    "source_entity_id": r.get("source_entity_id"),
                    "target_entity_id": r.get("target_entity_id"),
                    "description": r.get("description"),
                    "document_id": doc_id,
                }
            )
        meta = {
            "id": doc_id,
            "name": doc.get("name") or doc.get("title") or doc_id,
            "title": doc.get("title") or doc.get("name") or doc_id,
            "abstract": doc.get("abstract"),
            "extension": doc.get("extension"),
            "page_count": len(pages),
        }
        with self._lock:
            if any(d["id"] == doc_id for d in self._documents):
                raise ConfigurationError(f"document {doc_id!r} already ingested")
            self._documents.append(meta)
            self._nodes.extend(nodes)
            self._toc.extend(toc)
            self._entities.extend(entities)
            self._relationships.extend(relationships)
        return {
            "document_id": doc_id,
            "pages_stored": len(pages),
            "nodes_stored": len(nodes),
            "toc_entries_stored": len(toc),
            "entities_stored": len(entities),
            "relationships_stored": len(relationships),
        }

    # documents

    def _doc_view(self, meta: dict, include_toc: bool) -> dict:
        out = dict(meta)
        if include_toc:
            out["toc"] = [
                {"title": e["title"], "level": e["level"], "page": e["target_page"]}
                for e in list(self._toc)
                if e["document_id"] == meta["id"]
            ]
        return out

    def list_documents(self, limit: Optional[int] = None, include_toc: bool = True) -> List[dict]:
        docs = list(self._documents)
        if limit is not None:
            docs = docs[: max(0, int(limit))]
        return [self._doc_view(d, include_toc) for d in docs]

    def get_document(self, doc_id: str) -> Optional[dict]:
        for d in list(self._documents):
            if d["id"] == doc_id:
                return self._doc_view(d, True)
        return None

    # page nodes

    def search_page_nodes(self, query: Optional[str] = None, limit: int = 10, filter: Optional[dict] = None) -> List[dict]:
        filt = filter or {}
        out = []
        for n in list(self._nodes):
            if filt.get("document_id") and n["document_id"] != filt["document_id"]:
                continue
            if filt.get("type") and n["type"] != str(filt["type"]).lstrip(":"):
                continue
            if filt.get("page") is not None and n["page"] != int(filt["page"]):
                continue
            if not _matches(query, n["content"], n["description"]):
                continue
            out.append(dict(n))
            if limit is not None and len(out) >= int(limit):
                break
        return out

    def get_page_node(self, node_id: str) -> Optional[dict]:
        for n in list(self._nodes):
            if n["id"] == node_id:
                return dict(n)
        return None

    def list_page_nodes(self, filter: Optional[dict] = None) -> List[dict]:
        filt = dict(filter or {})
        limit = filt.pop("limit", None)
        page_id = filt.pop("page_id", None)
        out = self.search_page_nodes(None, limit=None, filter=filt)
        if page_id:
            out = [n for n in out if n["page_id"] == page_id]
        return out[: int(limit)] if limit is not None else out

    # table of contents

    def list_toc_entries(self, doc_id: Optional[str] = None, parent_id: Optional[str] = None, limit: Optional[int] = None) -> List[dict]:
        out = [
            dict(e)
            for e in list(self._toc)
            if (doc_id is None or e["document_id"] == doc_id) and (parent_id is None or e["parent_id"] == parent_id)
        ]
        return out[: int(limit)] if limit is not None else out

    def search_toc_entries(self, query: Optional[str] = None, limit: int = 10) -> List[dict]:
        out = [dict(e) for e in list(self._toc) if _matches(query, e["title"], e["description"])]
        return out[: int(limit)] if limit is not None else out

    def get_toc_entry(self, entry_id: str) -> Optional[dict]:
        for e in list(self._toc):
            if e["id"] == entry_id:
                return dict(e)
        return None

    # entities

    def search_entities(self, query: Optional[str] = None, limit: int = 10, filter: Optional[dict] = None) -> List[dict]:
        filt = filter or {}
        out = []
        for e in list(self._entities):
            if filt.get("type") and e["type"] != str(filt["type"]).lstrip(":"):
                continue
            if filt.get("document_id") and e["document_id"] != filt["document_id"]:
                continue
            if not _matches(query, e["name"], e["description"]):
                continue
            out.append(dict(e))
            if limit is not None and len(out) >= int(limit):
                break
        return out

    def get_entity(self, entity_id: str) -> Optional[dict]:
        for e in list(self._entities):
            if e["id"] == entity_id:
                return dict(e)
        return None

    def list_entities(self, filter: Optional[dict] = None) -> List[dict]:
        filt = dict(filter or {})
        limit = filt.pop("limit", None)
        return self.search_entities(None, limit=limit, filter=filt)

    def list_relationships(self, doc_id: Optional[str] = None, entity_id: Optional[str] = None, type: Optional[str] = None) -> List[dict]:
        out = []
        for r in list(self._relationships):
            if doc_id and r["document_id"] != doc_id:
                continue
            if entity_id and entity_id not in (r["source_entity_id"], r["target_entity_id"]):
                continue
            if type and r["type"] != str(type).lstrip(":"):
                continue
            out.append(dict(r))
        return out

    def entity_stats(self) -> dict:
        types: Dict[str, int] = {}
        for e in list(self._entities):
            types[e["type"]] = types.get(e["type"], 0) + 1
        return {"total_entities": sum(types.values()), "types": types, "total_relationships": len(self._relationships)}

    def stats(self) -> dict:
        return {
            "documents": len(self._documents),
            "page_nodes": len(self._nodes),
            "toc_entries": len(self._toc),
            "entities": len(self._entities),
            "relationships": len(self._relationships),
        }

    def close(self) -> None:
        """Drop every stored document. Readers holding a snapshot keep it."""
        with self._lock:
            self._documents = []
            self._nodes = []
            self._toc = []
            self._entities = []
            self._relationships = []


_HEADING_RE = re.compile(r"^(#{1,6})\s+(.*\S)\s*$")


def markdown_to_document(text: str, name: str, doc_id: Optional[str] = None) -> dict:
    """
    Turn a Markdown file into a corpus document.
    Form feeds split pages; headings become heading nodes and TOC entries; blank-line separated
    blocks become paragraphs (list items when every line starts with a bullet).
    """
    doc_id = doc_id or _new_id()
    pages = []
    toc = []
    parents: Dict[int, str] = {}
    title = None
    for p_idx, page_text in enumerate(text.split("\f")):
        nodes = []
        block: List[str] = []

        def flush():
            if not block:
                return
            content = "\n".join(block).strip()
            block.clear()
            if not content:
                return
            lines = content.splitlines()
            if all(re.match(r"^\s*([-*+]|\d+\.)\s+", ln) for ln in lines):
                for ln in lines:
                    nodes.append({"type": "list-item", "content": re.sub(r"^\s*([-*+]|\d+\.)\s+", "", ln)})
            else:
                nodes.append({"type": "paragraph", "content": content})

        for line in page_text.splitlines():
            m = _HEADING_RE.match(line)
            if m:
                flush()
                depth = len(m.group(1))
                heading = m.group(2)
                title = title or heading
                entry_id = _new_id()
                parent = None
                for d in range(depth - 1, 0, -1):
                    if d in parents:
                        parent = parents[d]
                        break
                parents[depth] = entry_id
                for d in [k for k in parents if k > depth]:
                    del parents[d]
                nodes.append({"type": "heading", "level": f"h{depth}", "content": heading})
                toc.append({"id": entry_id, "title": heading, "level": f"l{depth}", "target_page": p_idx, "parent_id": parent})
            elif not line.strip():
                flush()
            else:
                block.append(line)
        flush()
        pages.append({"index": p_idx, "nodes": nodes})
    return {"id": doc_id, "name": name, "title": title or name, "extension": "md", "pages": pages, "toc": toc}


def load_documents(paths: Iterable[str]) -> List[dict]:
    """Read corpus documents from .json files (one document or a list) and .md/.txt files."""
    docs: List[dict] = []
    for raw in paths:
        p = Path(raw)
        files = sorted(p.iterdir()) if p.is_dir() else [p]
        for f in files:
            suffix = f.suffix.lower()
            if suffix == ".json":
                data = json.loads(f.read_text(encoding="utf-8"))
                docs.extend(data if isinstance(data, list) else [data])
            elif suffix in (".md", ".markdown", ".txt"):
                docs.append(markdown_to_document(f.read_text(encoding="utf-8", errors="replace"), f.name, doc_id=f.stem))
    return docs
