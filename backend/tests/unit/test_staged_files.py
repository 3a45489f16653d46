"""
Unit tests for staged supplier files.
"""

import pytest

from supplier_import.services.staged_files import (
    count_rows,
    iter_staged_chunks,
    read_staged_rows,
    write_staged_rows,
)
from supplier_import.storage.uploads import UPLOADS_DIR, delete_upload


@pytest.fixture
def staged_file():
    rows = [[f"R{n}", f"Produit {n}", 10.0 + n, None] for n in range(7)]
    path = write_staged_rows(["Ref", "Nom", "Prix", "EAN"], rows)
    yield path
    delete_upload(path)


class TestStagedFiles:

    def test_written_inside_uploads_dir(self, staged_file):
        assert staged_file.parent == UPLOADS_DIR
        assert staged_file.suffix == ".csv"

    def test_header_is_not_a_data_row(self, staged_file):
        assert count_rows(staged_file) == 7
        assert read_staged_rows(staged_file)[0] == ["R0", "Produit 0", "10", ""]

    def test_chunks_cover_all_rows_in_order(self, staged_file):
        chunks = list(iter_staged_chunks(staged_file, 3))
        assert [len(chunk) for chunk in chunks] == [3, 3, 1]
        assert chunks[2][0][0] == "R6"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValueError):
            count_rows(tmp_path / "gone.csv")

    def test_delete_is_quiet_for_missing_files(self, tmp_path):
        delete_upload(tmp_path / "gone.csv")

    def test_blank_rows_are_kept(self):
        path = write_staged_rows(["Ref", "Nom"], [["R1", "Chaise"], [None, None], ["R2", "Table"]])
        try:
            assert count_rows(path) == 3
            assert read_staged_rows(path) == [["R1", "Chaise"], ["", ""], ["R2", "Table"]]
        finally:
            delete_upload(path)
