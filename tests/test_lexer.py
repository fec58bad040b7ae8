"""Tests for the source-to-instruction lexer."""

import pytest

from lexer import (
    LIT_CH,
    LIT_NUM,
    LIT_STR,
    TOGGLE_BITS,
    TOGGLE_COLS,
    TOGGLE_ROWS,
    EmatrmLexError,
    Lexer,
)


def kinds(source):
    return [tok.type for tok in Lexer(source, "<test>").tokenize()]


def lex(source):
    return Lexer(source, "<test>").tokenize()


class TestLiterals:
    """Literal instructions carry their payload text."""

    def test_string_literal(self):
        """A quoted string becomes one LIT_STR with the inner text."""
        tokens = lex('"hello world"')
        assert len(tokens) == 1
        assert tokens[0].type == LIT_STR
        assert tokens[0].value == "hello world"

    def test_empty_string_literal(self):
        """Two adjacent quotes make an empty string."""
        tokens = lex('""')
        assert tokens[0].type == LIT_STR
        assert tokens[0].value == ""

    def test_string_spanning_lines(self):
        """Newlines inside a string are kept and counted."""
        tokens = lex('"a\nb" >')
        assert tokens[0].value == "a\nb"
        assert tokens[0].line == 1
        assert tokens[1].line == 2

    def test_char_literal(self):
        """A quote mark takes exactly the next character."""
        tokens = lex("'x")
        assert tokens[0].type == LIT_CH
        assert tokens[0].value == "x"

    def test_char_literal_may_be_whitespace(self):
        """The character after the quote is taken even if it is a space."""
        tokens = lex("' >")
        assert tokens[0].type == LIT_CH
        assert tokens[0].value == " "
        assert tokens[1].type == "POP_ATOM"

    def test_char_literal_newline_advances_line(self):
        """A newline character literal still bumps the line counter."""
        tokens = lex("'\n>")
        assert tokens[0].value == "\n"
        assert tokens[1].line == 2

    def test_number_literal(self):
        """Digits between dollar signs form a number literal."""
        tokens = lex("$1234$")
        assert tokens[0].type == LIT_NUM
        assert tokens[0].value == "1234"

    def test_empty_number_literal(self):
        """An empty number literal is allowed and carries no digits."""
        tokens = lex("$$")
        assert tokens[0].type == LIT_NUM
        assert tokens[0].value == ""

    def test_operators_carry_empty_payload(self):
        """Non-literal instructions have an empty payload."""
        assert all(tok.value == "" for tok in lex("0|1`2A C R ~ > < w"))


class TestToggles:
    """Register mask toggle instructions."""

    def test_hex_digits_select_single_registers(self):
        """0-9 and a-f map to bit toggles 0-15."""
        assert kinds("0123456789abcdef") == list(TOGGLE_BITS)

    def test_column_toggles(self):
        """A bar and a digit 0-3 toggle a column."""
        assert kinds("|0|1|2|3") == list(TOGGLE_COLS)

    def test_row_toggles(self):
        """A backtick and a digit 0-3 toggle a row."""
        assert kinds("`0`1`2`3") == list(TOGGLE_ROWS)

    def test_full_matrix_toggle(self):
        """A toggles the whole mask."""
        assert kinds("A") == ["TOGGLE_MAT"]

    def test_uppercase_hex_is_not_a_toggle(self):
        """Only lowercase a-f are register digits; B is unknown."""
        with pytest.raises(EmatrmLexError):
            lex("B")


class TestOperators:
    """Single and two-character operators."""

    def test_modes(self):
        """C, R and ~ set traversal mode."""
        assert kinds("CR~") == ["MODE_COL", "MODE_ROW", "ORDER_REV"]

    def test_single_character_operators(self):
        """Each single-character operator maps to its kind."""
        assert kinds("><wWr#,+-*/.=FGLM&!") == [
            "POP_ATOM",
            "PUSH_ATOM",
            "WRITE",
            "WRITE_NEWLINE",
            "READ",
            "STR_TO_INT",
            "INT_TO_STR",
            "ADD",
            "SUB",
            "MUL",
            "DIV",
            "SAVE_JMP",
            "EQUAL",
            "GREQUAL",
            "GREATER",
            "LESS",
            "LEQUAL",
            "AND",
            "NOT",
        ]

    def test_grid_operators(self):
        """Percent prefixes the grid-id arithmetic family."""
        assert kinds("%+%-%*%/") == ["GRID_ADD", "GRID_SUB", "GRID_MUL", "GRID_DIV"]

    def test_rank_operators(self):
        """Bracket prefixes the rank arithmetic family."""
        assert kinds("[+[-[*[/") == ["RANK_ADD", "RANK_SUB", "RANK_MUL", "RANK_DIV"]

    def test_jump_operators(self):
        """j prefixes the jump stack operators."""
        assert kinds("j>j?j<") == ["POP_JMP", "POP_JMP_COND", "PUSH_JMP"]

    def test_or_operator(self):
        """?| is the or operator."""
        assert kinds("?|") == ["OR"]

    def test_whitespace_is_skipped(self):
        """Spaces, tabs and newlines separate nothing."""
        assert kinds(" 0 \t\n > \r\n w ") == ["TOGGLE_BIT_0", "POP_ATOM", "WRITE"]

    def test_source_order_is_preserved(self):
        """Instructions come out in source order."""
        assert kinds('$1$"a"\'b') == [LIT_NUM, LIT_STR, LIT_CH]


class TestLineNumbers:
    """Line tracking for diagnostics."""

    def test_lines_are_one_based(self):
        """Tokens record the line they start on."""
        tokens = lex("0\n\n1\n2")
        assert [tok.line for tok in tokens] == [1, 3, 4]


class TestErrors:
    """Malformed input fails the whole lex with a line number."""

    def test_unterminated_string(self):
        """A string without a closing quote is fatal."""
        with pytest.raises(EmatrmLexError) as info:
            lex('"abc')
        assert info.value.line == 1
        assert "Unterminated string" in info.value.message

    def test_unterminated_string_reports_start_line(self):
        """The error names the line the string started on."""
        with pytest.raises(EmatrmLexError) as info:
            lex('0\n"abc\ndef')
        assert info.value.line == 2

    def test_char_at_end_of_source(self):
        """A quote mark with nothing after it is fatal."""
        with pytest.raises(EmatrmLexError):
            lex("'")

    def test_non_digit_in_number(self):
        """Only decimal digits may appear in a number literal."""
        with pytest.raises(EmatrmLexError) as info:
            lex("$12a$")
        assert "Non-decimal digit" in info.value.message

    def test_negative_number_literal_rejected(self):
        """A sign is not a digit."""
        with pytest.raises(EmatrmLexError):
            lex("$-1$")

    def test_unterminated_number(self):
        """A number literal must be closed."""
        with pytest.raises(EmatrmLexError) as info:
            lex("$12")
        assert "Unterminated number" in info.value.message

    @pytest.mark.parametrize("source", ["|", "|4", "|x", "`", "`9"])
    def test_bad_grid_selector(self, source):
        """Row and column selectors need a digit 0-3."""
        with pytest.raises(EmatrmLexError):
            lex(source)

    @pytest.mark.parametrize("source", ["%", "%x", "[", "[>", "j", "jw", "?", "?&"])
    def test_bad_two_character_operator(self, source):
        """Prefix characters need a valid follow-up character."""
        with pytest.raises(EmatrmLexError):
            lex(source)

    def test_unknown_character(self):
        """Characters outside the instruction set are fatal."""
        with pytest.raises(EmatrmLexError) as info:
            lex("0\n  o")
        assert info.value.line == 2
        assert info.value.column == 3

    def test_error_message_names_location(self):
        """str() of the error includes file, line and column."""
        with pytest.raises(EmatrmLexError) as info:
            Lexer("\nz", "prog.em").tokenize()
        assert str(info.value).endswith("at prog.em:2:1")
