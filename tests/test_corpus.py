# -*- coding: utf-8 -*-

import json

import pytest

from conftest import CONTRACTS
from rlm.corpus import Corpus, load_documents, markdown_to_document
from rlm.errors import ConfigurationError


@pytest.fixture
def corpus():
    c = Corpus()
    c.ingest(CONTRACTS)
    return c


def test_ingest_reports_counts(corpus):
    assert corpus.stats() == {"documents": 3, "page_nodes": 7, "toc_entries": 3, "entities": 3, "relationships": 0}


def test_list_documents_includes_toc(corpus):
    docs = corpus.list_documents()
    assert [d["id"] for d in docs] == ["contract-x", "contract-y", "contract-z"]
    assert docs[0]["page_count"] == 2
    assert docs[0]["toc"][1] == {"title": "Payment Terms", "level": "l2", "page": 1}
    assert "toc" not in corpus.list_documents(limit=1, include_toc=False)[0]


def test_search_page_nodes_is_case_insensitive_and_filtered(corpus):
    hits = corpus.search_page_nodes("SIGNED BY")
    assert {h["document_id"] for h in hits} == {"contract-x", "contract-y"}
    only_x = corpus.search_page_nodes("signed by", filter={"document_id": "contract-x", "page": 0})
    assert len(only_x) == 1
    assert "Acme Corp" in only_x[0]["content"]
    headings = corpus.search_page_nodes(None, filter={"type": "heading"})
    assert [h["content"] for h in headings] == ["Supply Agreement X", "Payment Terms"]
    assert corpus.search_page_nodes("agreement", limit=2).__len__() == 2


def test_reads_return_copies(corpus):
    node = corpus.search_page_nodes("30 days")[0]
    node["content"] = "changed"
    assert corpus.get_page_node(node["id"])["content"] == "Invoices are payable within 30 days of receipt."


def test_toc_and_entities(corpus):
    assert [e["title"] for e in corpus.list_toc_entries("contract-x")] == ["Supply Agreement X", "Payment Terms"]
    assert corpus.search_toc_entries("payment")[0]["target_page"] == 1
    parties = corpus.list_entities({"type": "party", "document_id": "contract-x"})
    assert [p["name"] for p in parties] == ["Acme Corp", "Beta LLC"]
    assert corpus.entity_stats() == {"total_entities": 3, "types": {"party": 3}, "total_relationships": 0}
    assert corpus.get_entity("missing") is None


def test_duplicate_document_id_is_rejected(corpus):
    with pytest.raises(ConfigurationError):
        corpus.ingest([{"id": "contract-x", "pages": []}])


def test_invalid_documents_are_rejected():
    with pytest.raises(ConfigurationError):
        Corpus().ingest({"id": "single"})
    with pytest.raises(ConfigurationError):
        Corpus().ingest([{"pages": "nope"}])


def test_markdown_to_document_builds_pages_and_toc():
    text = "# Lease\n\nThe tenant pays rent.\n\n## Rent\n\n- monthly\n- in advance\n\f## Termination\n\nNinety days notice."
    doc = markdown_to_document(text, "lease.md", doc_id="lease")
    assert doc["title"] == "Lease"
    assert len(doc["pages"]) == 2
    types = [n["type"] for n in doc["pages"][0]["nodes"]]
    assert types == ["heading", "paragraph", "heading", "list-item", "list-item"]
    rent, termination = doc["toc"][1], doc["toc"][2]
    assert rent["parent_id"] == doc["toc"][0]["id"]
    assert termination["target_page"] == 1


def test_load_documents_reads_json_and_markdown(tmp_path):
    (tmp_path / "a.json").write_text(json.dumps([CONTRACTS[2]]), encoding="utf-8")
    (tmp_path / "b.md").write_text("# Notes\n\nSome text.", encoding="utf-8")
    (tmp_path / "ignored.bin").write_bytes(b"\x00")
    docs = load_documents([str(tmp_path)])
    assert [d["id"] for d in docs] == ["contract-z", "b"]
