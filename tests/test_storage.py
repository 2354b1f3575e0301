from datetime import datetime

import pytest

from app.edify.storage import LocalBookFileStore, StorageError, book_file_key, download_name, storage_from_config


def test_book_file_key_roundtrips_filename():
    key = book_file_key(7, "my-first-novel.epub", datetime(2024, 3, 9, 14, 5, 1))
    assert key == "books/7/20240309140501-my-first-novel.epub"
    assert download_name(key) == "my-first-novel.epub"


def test_local_store(tmp_path):
    store = storage_from_config({"STORAGE_BACKEND": "local", "STORAGE_LOCAL_ROOT": str(tmp_path)})
    assert isinstance(store, LocalBookFileStore)

    store.save("books/1/a.pdf", b"%PDF-1.4", "application/pdf")
    with store.load("books/1/a.pdf") as fh:
        assert fh.read() == b"%PDF-1.4"

    store.remove("books/1/a.pdf")
    store.remove("books/1/a.pdf")
    with pytest.raises(StorageError):
        store.load("books/1/a.pdf")

    with pytest.raises(StorageError):
        store.save("../outside.txt", b"x", "text/plain")
