"""
Parsing and compilation of Rego policy modules.

Modules are parsed into a small syntax tree holding the package, the imports
and the rule heads. The compiler then validates a whole set of modules
together: rule kinds must agree per path, packages must not collide with
rules, and no rule may be defined where the store already holds data.
"""

import re
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

logger = logging.getLogger(__name__)

PARSE_ERR = 'rego_parse_error'
COMPILE_ERR = 'rego_compile_error'

RULE_COMPLETE = 'complete'
RULE_PARTIAL_SET = 'partial_set'
RULE_PARTIAL_OBJECT = 'partial_object'
RULE_FUNCTION = 'function'

KEYWORDS = frozenset([
    'package', 'import', 'default', 'else', 'not', 'with', 'as', 'some',
    'every', 'in', 'if', 'contains', 'true', 'false', 'null',
])

IMPORT_ROOTS = ('data', 'input', 'future', 'rego')

_IDENT = r'[A-Za-z_][A-Za-z0-9_]*'
_REF = rf'{_IDENT}(?:\.{_IDENT}|\["[^"\\]*"\])*'
_PACKAGE_RE = re.compile(rf'^package\s+({_REF})$')
_IMPORT_RE = re.compile(rf'^import\s+({_REF})(?:\s+as\s+({_IDENT}))?$')
_RULE_HEAD_RE = re.compile(rf'^(default\s+)?({_IDENT}(?:\.{_IDENT})*)(.*)$', re.S)
_REF_SEGMENT_RE = re.compile(rf'\.?({_IDENT})|\["([^"\\]*)"\]')

_BRACKETS = {')': '(', ']': '[', '}': '{'}

PathConflictCheck = Callable[[Sequence[str]], bool]


@dataclass(frozen=True)
class Location:
    file: str
    row: int

    def __str__(self):
        return f"{self.file}:{self.row}"


@dataclass(frozen=True)
class RegoError:
    """One parse or compile error, reported with its source location."""

    code: str
    message: str
    location: Optional[Location] = None

    def __str__(self):
        if self.location is None:
            return f"{self.code}: {self.message}"
        return f"{self.location}: {self.code}: {self.message}"


class PolicyCompileError(Exception):
    """Raised when a set of policy modules fails to compile."""

    def __init__(self, errors: List[RegoError]):
        self.errors = list(errors)
        super().__init__(format_errors(self.errors))


class PolicyParseError(PolicyCompileError):
    """Raised when a policy module's source cannot be parsed."""
    pass


def format_errors(errors: List[RegoError]) -> str:
    if len(errors) == 1:
        return f"1 error occurred: {errors[0]}"
    return f"{len(errors)} errors occurred:\n" + "\n".join(str(e) for e in errors)


@dataclass
class Import:
    path: str
    alias: Optional[str]
    location: Location


@dataclass
class Rule:
    ref: Tuple[str, ...]
    kind: str
    default: bool
    location: Location

    @property
    def name(self) -> str:
        return self.ref[-1]


@dataclass
class Module:
    package: Tuple[str, ...]
    location: Location
    imports: List[Import] = field(default_factory=list)
    rules: List[Rule] = field(default_factory=list)

    @property
    def package_ref(self) -> str:
        return data_ref(self.package)

    def rule_paths(self) -> List[Tuple[str, ...]]:
        return [self.package + rule.ref for rule in self.rules]


@dataclass
class PolicyModuleFile:
    """A policy module fetched from the directory: its id, raw source and parse tree."""

    path: str
    raw: bytes
    parsed: Module


def data_ref(path: Sequence[str]) -> str:
    return '.'.join(('data',) + tuple(path))


def split_ref(ref: str) -> Tuple[str, ...]:
    return tuple(ident or quoted for ident, quoted in _REF_SEGMENT_RE.findall(ref))


class _Statement:
    def __init__(self, row: int):
        self.row = row
        self.chars: List[str] = []

    @property
    def text(self) -> str:
        return ''.join(self.chars).strip()


def parse_error(filename: str, row: int, message: str) -> PolicyParseError:
    return PolicyParseError([RegoError(PARSE_ERR, message, Location(filename, row))])


def _split_statements(filename: str, source: str) -> List[_Statement]:
    """
    Split source into top-level statements.

    Comments are dropped and string literals are kept intact. A newline ends a
    statement only outside brackets.
    """
    statements = []
    current = None
    stack = []
    row = 1
    i = 0
    n = len(source)

    def flush():
        nonlocal current
        if current is not None and current.text:
            statements.append(current)
        current = None

    while i < n:
        ch = source[i]

        if ch == '#':
            while i < n and source[i] != '\n':
                i += 1
            continue

        if ch == '\n':
            row += 1
            i += 1
            if stack:
                current.chars.append('\n')
            else:
                flush()
            continue

        if ch == ';' and not stack:
            flush()
            i += 1
            continue

        if current is None:
            if ch.isspace():
                i += 1
                continue
            current = _Statement(row)

        if ch == '"':
            j = i + 1
            while True:
                if j >= n or source[j] == '\n':
                    raise parse_error(filename, row, "non-terminated string")
                if source[j] == '\\':
                    j += 2
                    continue
                if source[j] == '"':
                    break
                j += 1
            current.chars.append(source[i:j + 1])
            i = j + 1
            continue

        if ch == '`':
            j = source.find('`', i + 1)
            if j < 0:
                raise parse_error(filename, row, "non-terminated raw string")
            literal = source[i:j + 1]
            current.chars.append(literal)
            row += literal.count('\n')
            i = j + 1
            continue

        if ch in '([{':
            stack.append((ch, row))
        elif ch in ')]}':
            if not stack or stack[-1][0] != _BRACKETS[ch]:
                raise parse_error(filename, row, f"unexpected {ch} token")
            stack.pop()

        current.chars.append(ch)
        i += 1

    if stack:
        opener, opened_at = stack[-1]
        raise parse_error(filename, opened_at, f"unexpected eof token: {opener} is never closed")
    flush()

    # else branches continue the rule before them
    merged = []
    for statement in statements:
        if re.match(r'^else\b', statement.text):
            if not merged:
                raise parse_error(filename, statement.row, "unexpected else keyword")
            merged[-1].chars.append(' ')
            merged[-1].chars.extend(statement.chars)
        else:
            merged.append(statement)
    return merged


def _matching(text: str, start: int) -> int:
    """Index of the bracket closing the one at text[start]."""
    depth = 0
    in_string = False
    i = start
    while i < len(text):
        ch = text[i]
        if in_string:
            if ch == '\\':
                i += 1
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in '([{':
            depth += 1
        elif ch in ')]}':
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return len(text) - 1


def _starts_with_word(text: str, word: str) -> bool:
    return re.match(rf'^{word}\b', text) is not None


def _check_body(filename: str, row: int, text: str):
    """Reject empty rule bodies such as `p { }` or `p if {}`."""
    if _starts_with_word(text, 'if'):
        text = text[2:].lstrip()
        if not text:
            raise parse_error(filename, row, "rule body expected after if")
    if text.startswith('{'):
        close = _matching(text, 0)
        if not text[1:close].strip():
            raise parse_error(filename, row, "found empty body")


def _parse_rule(filename: str, statement: _Statement) -> Rule:
    text = statement.text
    row = statement.row
    match = _RULE_HEAD_RE.match(text)
    if match is None:
        token = text.split()[0] if text.split() else text
        raise parse_error(filename, row, f"unexpected {token!r} token")

    default = match.group(1) is not None
    ref = tuple(match.group(2).split('.'))
    rest = match.group(3).strip()

    for segment in ref:
        if segment in KEYWORDS:
            raise parse_error(filename, row, f"unexpected {segment} keyword")

    if rest.startswith('('):
        kind = RULE_FUNCTION
        after = rest[_matching(rest, 0) + 1:].strip()
    elif rest.startswith('['):
        after = rest[_matching(rest, 0) + 1:].strip()
        kind = RULE_PARTIAL_OBJECT if after.startswith(('=', ':=')) else RULE_PARTIAL_SET
    elif _starts_with_word(rest, 'contains'):
        kind = RULE_PARTIAL_SET
        after = rest[len('contains'):].strip()
        if not after:
            raise parse_error(filename, row, "term expected after contains")
        after = ''
    else:
        kind = RULE_COMPLETE
        after = rest

    if default:
        if kind != RULE_COMPLETE:
            raise parse_error(filename, row, f"default rule {'.'.join(ref)} must be a complete rule")
        if not after.startswith(('=', ':=')) or after.startswith('=='):
            raise parse_error(filename, row, f"default rule {'.'.join(ref)} must have a value")
        if not after.lstrip(':=').strip():
            raise parse_error(filename, row, "rule value expected")
        return Rule(ref, kind, True, Location(filename, row))

    if after.startswith(('=', ':=')) and not after.startswith('=='):
        value = after.lstrip(':=').strip()
        if not value:
            raise parse_error(filename, row, "rule value expected")
    elif _starts_with_word(after, 'if') or after.startswith('{'):
        _check_body(filename, row, after)
    elif after:
        raise parse_error(filename, row, f"unexpected {after.split()[0]!r} token")
    elif kind == RULE_COMPLETE:
        raise parse_error(filename, row, f"rule {'.'.join(ref)} must have a value or a body")

    return Rule(ref, kind, False, Location(filename, row))


def parse_module(filename: str, source: Union[str, bytes]) -> Module:
    """
    Parse the source of one policy module.

    Args:
        filename: Module id, used in error locations
        source: Rego source text or UTF-8 bytes

    Returns:
        Parsed module

    Raises:
        PolicyParseError: If the source is not a valid module
    """
    if isinstance(source, (bytes, bytearray)):
        try:
            source = bytes(source).decode('utf-8')
        except UnicodeDecodeError as e:
            raise parse_error(filename, 1, f"module source is not valid UTF-8: {e}")

    statements = _split_statements(filename, source)
    if not statements:
        raise parse_error(filename, 1, "empty module")

    first = statements[0]
    match = _PACKAGE_RE.match(first.text)
    if match is None:
        raise parse_error(filename, first.row, "package expected")

    module = Module(package=split_ref(match.group(1)), location=Location(filename, first.row))

    for statement in statements[1:]:
        text = statement.text
        if _starts_with_word(text, 'package'):
            raise parse_error(filename, statement.row, "unexpected package keyword")

        if _starts_with_word(text, 'import'):
            match = _IMPORT_RE.match(text)
            if match is None:
                raise parse_error(filename, statement.row, "invalid import statement")
            path = match.group(1)
            if split_ref(path)[0] not in IMPORT_ROOTS:
                raise parse_error(filename, statement.row,
                                   f"invalid path {path}: path must begin with input or data")
            module.imports.append(Import(path, match.group(2), Location(filename, statement.row)))
            continue

        module.rules.append(_parse_rule(filename, statement))

    logger.debug(f"Parsed module {filename}: package {module.package_ref}, {len(module.rules)} rules")
    return module


class PolicyCompiler(ABC):
    """Interface for compiling a set of policy modules as one unit."""

    @abstractmethod
    def compile(self, modules: Dict[str, Module], path_conflict_check: Optional[PathConflictCheck] = None) -> None:
        """
        Compile modules together.

        Args:
            modules: Parsed modules keyed by module id
            path_conflict_check: Predicate telling whether data already occupies a path

        Raises:
            PolicyCompileError: With every error found, if compilation fails
        """


class RegoCompiler(PolicyCompiler):
    """Validates rule heads across a module set and against existing data."""

    def __init__(self, max_errors: int = 10):
        self.max_errors = max_errors

    def compile(self, modules: Dict[str, Module], path_conflict_check: Optional[PathConflictCheck] = None) -> None:
        errors = []
        rules_by_path: Dict[Tuple[str, ...], List[Rule]] = {}
        packages: Dict[Tuple[str, ...], Module] = {}

        for module_id in sorted(modules):
            module = modules[module_id]
            packages.setdefault(module.package, module)
            for rule in module.rules:
                rules_by_path.setdefault(module.package + rule.ref, []).append(rule)

        for module_id in sorted(modules):
            errors.extend(self._check_imports(modules[module_id]))

        for path in sorted(rules_by_path):
            rules = rules_by_path[path]
            if len({rule.kind for rule in rules}) > 1:
                errors.append(RegoError(COMPILE_ERR, f"conflicting rules {data_ref(path)} found", rules[0].location))
            defaults = [rule for rule in rules if rule.default]
            if len(defaults) > 1:
                errors.append(RegoError(COMPILE_ERR, f"multiple default rules {data_ref(path)} found",
                                        defaults[1].location))
            for i in range(1, len(path)):
                prefix = path[:i]
                if prefix in rules_by_path:
                    errors.append(RegoError(
                        COMPILE_ERR,
                        f"rule {data_ref(path)} conflicts with rule {data_ref(prefix)} "
                        f"defined at {rules_by_path[prefix][0].location}",
                        rules[0].location))

        for package in sorted(packages):
            for i in range(1, len(package) + 1):
                prefix = package[:i]
                if prefix in rules_by_path:
                    errors.append(RegoError(
                        COMPILE_ERR,
                        f"package {data_ref(package)} conflicts with rule {data_ref(prefix)} "
                        f"defined at {rules_by_path[prefix][0].location}",
                        packages[package].location))

        if path_conflict_check is not None:
            for path in sorted(rules_by_path):
                if path_conflict_check(list(path)):
                    errors.append(RegoError(COMPILE_ERR, f"conflicting rule for data path {'/'.join(path)} found",
                                            rules_by_path[path][0].location))

        if errors:
            logger.error(f"Compilation of {len(modules)} modules failed with {len(errors)} errors")
            raise PolicyCompileError(errors[:self.max_errors])

        logger.info(f"Compiled {len(modules)} policy modules ({len(rules_by_path)} rule paths)")

    @staticmethod
    def _check_imports(module: Module) -> List[RegoError]:
        """Report imports whose name is taken by another import or a rule of the same module."""
        errors = []
        rule_names = {rule.ref[0] for rule in module.rules}
        seen: Dict[str, Import] = {}
        for imp in module.imports:
            name = imp.alias or split_ref(imp.path)[-1]
            if name in seen:
                errors.append(RegoError(COMPILE_ERR, f"import {imp.path} shadows import {seen[name].path}",
                                        imp.location))
            else:
                seen[name] = imp
            if name in rule_names:
                errors.append(RegoError(COMPILE_ERR, f"import {imp.path} conflicts with rule {name}",
                                        imp.location))
        return errors
