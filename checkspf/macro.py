# -*- coding: utf-8 -*-
"""SPF macro strings (RFC 7208 section 7): decoding and expansion"""

from __future__ import annotations

import ipaddress
import re
import time
from typing import Optional, Union

import pyleri

from checkspf._constants import SYNTAX_ERROR_MARKER
from checkspf.utils import SPFError

"""Copyright 2019-2023 Sean Whalen

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

   https://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License."""

MACRO_LETTERS = "slodiphv"
EXP_MACRO_LETTERS = MACRO_LETTERS + "crt"
MACRO_DELIMITERS = ".-+,/_="

MACRO_EXPAND_REGEX_STRING = (
    r"%\{{[{letters}](?:[1-9]\d*)?r?[.\-+,/_=]*\}}"
)
MACRO_ESCAPE_REGEX_STRING = r"%[%_-]"
MACRO_LITERAL_REGEX_STRING = r"[\x21-\x24\x26-\x7e]+"
EXP_MACRO_LITERAL_REGEX_STRING = r"[\x20-\x24\x26-\x7e]+"

MACRO_CHUNK_REGEX = re.compile(
    r"%\{(?P<letter>[a-z])(?P<digits>\d*)(?P<reverse>r?)"
    r"(?P<delimiter>[.\-+,/_=]*)\}"
    r"|(?P<literal>(?:%[%_-]|[^%])+)"
)
MACRO_ESCAPE_REGEX = re.compile(MACRO_ESCAPE_REGEX_STRING)
INVALID_CHARACTERS_REGEX = re.compile(r"[^\x21-\x7e]")
EXP_INVALID_CHARACTERS_REGEX = re.compile(r"[^\x20-\x7e]")

MACRO_ESCAPES = {"%%": "%", "%_": " ", "%-": "%20"}


class InvalidMacroStringException(SPFError):
    """Raised when a macro string is malformed"""


class MissingEnvironmentValueException(SPFError):
    """Raised when a macro letter can't be expanded because its value is
    missing from the environment"""

    def __init__(self, environment_value_identifier: str):
        self.environment_value_identifier = environment_value_identifier
        SPFError.__init__(
            self,
            "Missing the environment value for the macro letter "
            f"'{environment_value_identifier}'",
            data={"macro_letter": environment_value_identifier},
        )


class _MacroStringGrammar(pyleri.Grammar):
    """Defines Pyleri grammar for domain-spec macro strings"""

    macro_expand = pyleri.Regex(
        MACRO_EXPAND_REGEX_STRING.format(letters=MACRO_LETTERS)
    )
    macro_escape = pyleri.Regex(MACRO_ESCAPE_REGEX_STRING)
    macro_literal = pyleri.Regex(MACRO_LITERAL_REGEX_STRING)
    START = pyleri.Repeat(pyleri.Choice(macro_expand, macro_escape, macro_literal))


class _ExplanationMacroStringGrammar(pyleri.Grammar):
    """Defines Pyleri grammar for explanation macro strings (``exp`` TXT
    records), which also allow spaces and the ``c``, ``r`` and ``t`` letters"""

    macro_expand = pyleri.Regex(
        MACRO_EXPAND_REGEX_STRING.format(letters=EXP_MACRO_LETTERS)
    )
    macro_escape = pyleri.Regex(MACRO_ESCAPE_REGEX_STRING)
    macro_literal = pyleri.Regex(EXP_MACRO_LITERAL_REGEX_STRING)
    START = pyleri.Repeat(pyleri.Choice(macro_expand, macro_escape, macro_literal))


_DOMAIN_SPEC_GRAMMAR = _MacroStringGrammar()
_EXPLANATION_GRAMMAR = _ExplanationMacroStringGrammar()


class LiteralString:
    """A run of literal text, escapes (``%%``, ``%_``, ``%-``) included"""

    def __init__(self, text: str):
        self.text = text

    def __str__(self):
        return self.text

    def __repr__(self):
        return f"LiteralString({self.text!r})"

    def __eq__(self, other):
        return isinstance(other, LiteralString) and self.text == other.text

    def __hash__(self):
        return hash(self.text)


class Placeholder:
    """A ``%{...}`` macro expansion"""

    ML_SENDER = "s"
    ML_SENDER_LOCAL_PART = "l"
    ML_SENDER_DOMAIN = "o"
    ML_DOMAIN = "d"
    ML_IP = "i"
    ML_IP_VALIDATED_DOMAIN = "p"
    ML_IP_TYPE = "v"
    ML_HELO_DOMAIN = "h"
    ML_SMTP_CLIENT_IP = "c"
    ML_CHECKER_DOMAIN = "r"
    ML_CURRENT_TIMESTAMP = "t"

    def __init__(
        self,
        macro_letter: str,
        num_output_parts: Optional[int] = None,
        reverse: bool = False,
        delimiter: str = "",
    ):
        self.macro_letter = macro_letter
        self.num_output_parts = num_output_parts
        self.reverse = reverse
        self.delimiter = delimiter

    def __str__(self):
        digits = "" if self.num_output_parts is None else str(self.num_output_parts)
        reverse = "r" if self.reverse else ""
        return f"%{{{self.macro_letter}{digits}{reverse}{self.delimiter}}}"

    def __repr__(self):
        return (
            f"Placeholder({self.macro_letter!r}, {self.num_output_parts!r}, "
            f"{self.reverse!r}, {self.delimiter!r})"
        )

    def __eq__(self, other):
        return isinstance(other, Placeholder) and (
            self.macro_letter,
            self.num_output_parts,
            self.reverse,
            self.delimiter,
        ) == (
            other.macro_letter,
            other.num_output_parts,
            other.reverse,
            other.delimiter,
        )

    def __hash__(self):
        return hash(str(self))


Chunk = Union[LiteralString, Placeholder]


class MacroString:
    """A decoded macro string: a list of literal and placeholder chunks"""

    def __init__(self, chunks: Optional[list[Chunk]] = None):
        self.chunks = list(chunks) if chunks else []

    @property
    def is_empty(self) -> bool:
        return len(self.chunks) == 0

    @property
    def contains_placeholders(self) -> bool:
        return any(isinstance(chunk, Placeholder) for chunk in self.chunks)

    def __str__(self):
        return "".join(map(str, self.chunks))

    def __repr__(self):
        return f"MacroString({self.chunks!r})"

    def __eq__(self, other):
        return isinstance(other, MacroString) and self.chunks == other.chunks

    def __hash__(self):
        return hash(str(self))


class MacroStringDecoder:
    """Parses macro strings into :class:`MacroString` objects"""

    def __init__(self, *, syntax_error_marker: str = SYNTAX_ERROR_MARKER):
        self.syntax_error_marker = syntax_error_marker

    def _raise_syntax_error(self, value: str, pos: int, reason: str):
        marked_value = value[:pos] + self.syntax_error_marker + value[pos:]
        raise InvalidMacroStringException(
            f"Invalid macro string: {reason} at position {pos} "
            f"(marked with {self.syntax_error_marker}) in: {marked_value}"
        )

    def decode(
        self, string: str, *, allow_empty: bool = False, exp: bool = False
    ) -> MacroString:
        """
        Decodes a macro string

        Args:
            string (str): The macro string (a domain-spec or an explanation)
            allow_empty (bool): Accept an empty string
            exp (bool): Decode an explanation string, which may contain spaces
                        and the ``c``, ``r`` and ``t`` macro letters

        Returns:
            MacroString: The decoded macro string

        Raises:
            :exc:`checkspf.macro.InvalidMacroStringException`
        """
        if string == "":
            if allow_empty:
                return MacroString()
            raise InvalidMacroStringException("The macro string is empty")
        invalid_regex = EXP_INVALID_CHARACTERS_REGEX if exp else INVALID_CHARACTERS_REGEX
        invalid_character = invalid_regex.search(string)
        if invalid_character:
            self._raise_syntax_error(
                string,
                invalid_character.start(),
                f"invalid character {invalid_character.group()!r}",
            )
        grammar = _EXPLANATION_GRAMMAR if exp else _DOMAIN_SPEC_GRAMMAR
        parsed_string = grammar.parse(string)
        if not parsed_string.is_valid:
            expecting = list(
                map(lambda x: str(x).strip('"'), list(parsed_string.expecting))
            )
            reason = "unexpected character"
            if expecting:
                reason = "expected " + " or ".join(expecting)
            self._raise_syntax_error(string, parsed_string.pos, reason)

        chunks = []
        for match in MACRO_CHUNK_REGEX.finditer(string):
            if match.group("literal") is not None:
                chunks.append(LiteralString(match.group("literal")))
                continue
            digits = match.group("digits")
            chunks.append(
                Placeholder(
                    match.group("letter"),
                    int(digits) if digits else None,
                    match.group("reverse") == "r",
                    match.group("delimiter"),
                )
            )

        return MacroString(chunks)


class Expander:
    """Expands macro strings against a check state"""

    def expand(self, macro_string: MacroString, current_domain: str, state) -> str:
        """
        Expands a macro string

        Args:
            macro_string (MacroString): The decoded macro string
            current_domain (str): The domain whose record is being evaluated
            state (checkspf.state.State): The state of the running check

        Returns:
            str: The expanded string

        Raises:
            :exc:`checkspf.macro.MissingEnvironmentValueException`
            :exc:`checkspf.state.TooManyDNSLookupsException`
        """
        expanded = []
        for chunk in macro_string.chunks:
            if isinstance(chunk, LiteralString):
                expanded.append(self.expand_literal_string(chunk))
            else:
                value = self.get_placeholder_value(
                    chunk.macro_letter, current_domain, state
                )
                expanded.append(self.transform_placeholder_value(chunk, value))

        return "".join(expanded)

    @staticmethod
    def expand_literal_string(literal_string: LiteralString) -> str:
        return MACRO_ESCAPE_REGEX.sub(
            lambda match: MACRO_ESCAPES[match.group()], literal_string.text
        )

    @staticmethod
    def get_placeholder_value(macro_letter: str, current_domain: str, state) -> str:
        environment = state.environment
        ip_address = environment.client_ip
        value = ""
        if macro_letter == Placeholder.ML_SENDER:
            value = state.sender
        elif macro_letter in [
            Placeholder.ML_SENDER_LOCAL_PART,
            Placeholder.ML_SENDER_DOMAIN,
        ]:
            if state.sender == "":
                raise MissingEnvironmentValueException(Placeholder.ML_SENDER)
            if macro_letter == Placeholder.ML_SENDER_LOCAL_PART:
                value = state.sender_local_part
            else:
                value = state.sender_domain
        elif macro_letter == Placeholder.ML_DOMAIN:
            value = current_domain
        elif macro_letter == Placeholder.ML_IP:
            if isinstance(ip_address, ipaddress.IPv6Address):
                value = ".".join(ip_address.exploded.replace(":", ""))
            elif ip_address is not None:
                value = str(ip_address)
        elif macro_letter in [
            Placeholder.ML_IP_VALIDATED_DOMAIN,
            Placeholder.ML_IP_TYPE,
            Placeholder.ML_SMTP_CLIENT_IP,
        ]:
            if ip_address is None:
                raise MissingEnvironmentValueException(Placeholder.ML_IP)
            if macro_letter == Placeholder.ML_IP_VALIDATED_DOMAIN:
                value = state.get_client_ip_domain()
            elif macro_letter == Placeholder.ML_IP_TYPE:
                value = "ip6" if ip_address.version == 6 else "in-addr"
            else:
                value = str(ip_address)
        elif macro_letter == Placeholder.ML_HELO_DOMAIN:
            value = environment.helo_domain
        elif macro_letter == Placeholder.ML_CHECKER_DOMAIN:
            value = environment.checker_domain
        elif macro_letter == Placeholder.ML_CURRENT_TIMESTAMP:
            value = str(int(time.time()))
        if value == "":
            raise MissingEnvironmentValueException(macro_letter)

        return value

    @staticmethod
    def transform_placeholder_value(placeholder: Placeholder, value: str) -> str:
        if (
            placeholder.num_output_parts is None
            and not placeholder.reverse
            and placeholder.delimiter == ""
        ):
            return value
        delimiter = placeholder.delimiter or "."
        parts = re.split(f"[{re.escape(delimiter)}]", value)
        if placeholder.reverse:
            parts.reverse()
        if placeholder.num_output_parts is not None:
            parts = parts[-placeholder.num_output_parts :]

        return ".".join(parts)
