"""
Unit tests for the raw table loader (delimited text and workbooks).
"""

from io import BytesIO

import pytest
from openpyxl import Workbook

from supplier_import.core.errors import TableParseError
from supplier_import.utils.table_loader import detect_delimiter, parse_spreadsheet


def workbook_bytes(rows) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    for row in rows:
        sheet.append(row)
    output = BytesIO()
    workbook.save(output)
    return output.getvalue()


class TestDelimitedText:

    def test_semicolon_is_default(self):
        rows = parse_spreadsheet("Nom;Prix\nChaise;49,90\n".encode("utf-8"), "tarif.csv")
        assert rows == [["Nom", "Prix"], ["Chaise", "49,90"]]

    def test_comma_only_when_dominant(self):
        assert detect_delimiter("a,b,c,d,e") == ","
        assert detect_delimiter("a,b;c") == ";"
        assert detect_delimiter("a,b,c") == ";"

    def test_bom_and_blank_lines_are_dropped(self):
        content = "\ufeffNom;Prix\n\n   \nTable;10\n".encode("utf-8")
        assert parse_spreadsheet(content, "x.csv") == [["Nom", "Prix"], ["Table", "10"]]

    def test_quoted_cell_keeps_its_line_breaks(self):
        content = 'Nom;Description\nChaise;"Assise bois\n\nPieds acier"\nTable;Chêne\n'.encode("utf-8")
        rows = parse_spreadsheet(content, "x.csv")
        assert rows == [
            ["Nom", "Description"],
            ["Chaise", "Assise bois\n\nPieds acier"],
            ["Table", "Chêne"],
        ]

    def test_form_feed_and_line_separator_stay_inside_cells(self):
        content = "Nom;Note\nChaise;a\x0cb\nTable;c\u2028d\n".encode("utf-8")
        rows = parse_spreadsheet(content, "x.csv")
        assert rows == [["Nom", "Note"], ["Chaise", "a\x0cb"], ["Table", "c\u2028d"]]

    def test_crlf_and_separator_only_rows(self):
        rows = parse_spreadsheet(b"Nom;Prix\r\n;\r\nTable;10\r\n", "x.csv")
        assert rows == [["Nom", "Prix"], ["Table", "10"]]

    def test_rows_stay_ragged(self):
        rows = parse_spreadsheet(b"a;b;c\nd\n", "x.csv")
        assert rows == [["a", "b", "c"], ["d"]]

    def test_latin1_content(self):
        rows = parse_spreadsheet("Désignation;Prix\n".encode("latin-1"), "x.csv")
        assert rows[0][0] == "Désignation"

    def test_explicit_delimiter_wins(self):
        rows = parse_spreadsheet(b"a|b\n1|2\n", "x.txt", delimiter="|")
        assert rows == [["a", "b"], ["1", "2"]]

    def test_empty_content(self):
        assert parse_spreadsheet(b"", "x.csv") == []


class TestWorkbook:

    def test_first_sheet_values(self):
        content = workbook_bytes([["Nom", "Prix", "EAN"], ["Chaise", 49.9, "1234567890123"]])
        rows = parse_spreadsheet(content, "catalogue.xlsx")
        assert rows == [["Nom", "Prix", "EAN"], ["Chaise", 49.9, "1234567890123"]]

    def test_workbook_detected_without_name(self):
        content = workbook_bytes([["a"]])
        assert parse_spreadsheet(content) == [["a"]]

    def test_corrupt_workbook(self):
        with pytest.raises(TableParseError):
            parse_spreadsheet(b"PK\x03\x04not really a zip", "broken.xlsx")

    def test_unsupported_extension(self):
        with pytest.raises(TableParseError):
            parse_spreadsheet(b"%PDF-1.4", "catalogue.pdf")
