"""Procedure name resolution and argument binding."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Union

from app.config import HandlerConfig
from app.errors import RequestError, error_to_string
from webplsql.binds import Bind, BindKind, BindMap, Direction
from webplsql.cache import Cache

_logger = logging.getLogger("webplsql.procedure")

ArgValue = Union[str, List[str]]
Arguments = Dict[str, ArgValue]
ArgumentTypes = Dict[str, str]

VARIABLE_ARGUMENTS_MARKER = "!"
DEFAULT_EXCLUSION_LIST = ("sys.", "dbms_", "utl_", "owa_", "htp.", "htf.", "wpg_docload.", "ctxsys.", "mdsys.")
RESOLVED_NAME_MAX_LEN = 400
MAX_PROCEDURE_PARAMETERS = 1000
ARGUMENT_NAME_MAX_LEN = 128
TABLE_TYPES = ("PL/SQL TABLE", "TABLE", "VARRAY")

_ALLOWED_CHARS = frozenset("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789._#$")
_ARGUMENT_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_#$]*$")

SQL_RESOLVE_NAME = """
DECLARE
    l_schema VARCHAR2(128);
    l_part1 VARCHAR2(128);
    l_part2 VARCHAR2(128);
    l_dblink VARCHAR2(128);
    l_part1_type NUMBER;
    l_object_number NUMBER;
BEGIN
    dbms_utility.name_resolve(
        name => :name,
        context => 1,
        schema => l_schema,
        part1 => l_part1,
        part2 => l_part2,
        dblink => l_dblink,
        part1_type => l_part1_type,
        object_number => l_object_number
    );
    IF l_part1 IS NOT NULL THEN
        :resolved := l_schema || '.' || l_part1 || '.' || l_part2;
    ELSE
        :resolved := l_schema || '.' || l_part2;
    END IF;
END;
"""

SQL_GET_ARGUMENTS = """
DECLARE
    l_schema VARCHAR2(128);
    l_part1 VARCHAR2(128);
    l_part2 VARCHAR2(128);
    l_dblink VARCHAR2(128);
    l_part1_type NUMBER;
    l_object_number NUMBER;
BEGIN
    dbms_utility.name_resolve(name => UPPER(:name), context => 1, schema => l_schema, part1 => l_part1, part2 => l_part2, dblink => l_dblink, part1_type => l_part1_type, object_number => l_object_number);
    IF l_part1 IS NOT NULL THEN
        SELECT argument_name, data_type BULK COLLECT INTO :names, :types FROM all_arguments
        WHERE owner = l_schema AND package_name = l_part1 AND object_name = l_part2 AND argument_name IS NOT NULL
        ORDER BY overload, sequence;
    ELSE
        SELECT argument_name, data_type BULK COLLECT INTO :names, :types FROM all_arguments
        WHERE owner = l_schema AND package_name IS NULL AND object_name = l_part2 AND argument_name IS NOT NULL
        ORDER BY overload, sequence;
    END IF;
END;
"""


@dataclass
class ProcedureCall:
    sql: str
    binds: BindMap = field(default_factory=dict)
    resolved_name: str | None = None


@dataclass
class ResolverCaches:
    """Per-route caches backing name resolution."""

    names: Cache[str]
    arguments: Cache[ArgumentTypes]
    validation: Cache[bool]

    @classmethod
    def create(cls, max_size: int) -> "ResolverCaches":
        return cls(names=Cache(max_size), arguments=Cache(max_size), validation=Cache(max_size))

    def clear(self) -> None:
        self.names.clear()
        self.arguments.clear()
        self.validation.clear()

    def stats(self) -> dict:
        return {
            "procedure_name": self.names.get_stats(),
            "argument": self.arguments.get_stats(),
            "validation": self.validation.get_stats(),
        }


def remove_special_characters(value: str | None) -> str:
    if not value:
        return ""
    return "".join(c for c in value if c in _ALLOWED_CHARS)


def sanitize_name(raw_name: str) -> str:
    return remove_special_characters(raw_name.lower().strip())


def check_exclusions(name: str, raw_name: str, exclusion_list: List[str] | None = None) -> None:
    for prefix in DEFAULT_EXCLUSION_LIST:
        if name.startswith(prefix):
            raise RequestError(f'Procedure name "{raw_name}" is in default exclusion list "{",".join(DEFAULT_EXCLUSION_LIST)}"')
    for prefix in exclusion_list or []:
        if prefix and name.startswith(prefix.lower()):
            raise RequestError(f'Procedure name "{raw_name}" is in custom exclusion list "{",".join(exclusion_list)}"')


async def _load_request_valid(name: str, function: str, session: Any) -> bool:
    sql = "\n".join(
        [
            "DECLARE",
            "    l_valid NUMBER := 0;",
            "BEGIN",
            f"    IF ({function}(:proc)) THEN",
            "        l_valid := 1;",
            "    END IF;",
            "    :valid := l_valid;",
            "END;",
        ]
    )
    binds = {
        "proc": Bind.string(name),
        "valid": Bind(Direction.OUT, BindKind.NUMBER),
    }
    try:
        result = await session.execute(sql, binds, query_name="procedure.validate")
    except Exception as exc:
        raise RequestError(f'Error when validating procedure name "{name}"\n{sql}\n{error_to_string(exc)}') from exc
    valid = result.get("valid")
    if not isinstance(valid, (int, float)):
        raise RuntimeError(f"Internal error when parsing validation result {result!r}")
    return int(valid) == 1


async def request_valid(name: str, function: str, session: Any, cache: Cache[bool]) -> bool:
    key = name.lower()
    cached = cache.get(key)
    if cached is not None:
        _logger.debug("cache_hit=validation key=%s", key)
        return cached
    valid = await _load_request_valid(name, function, session)
    cache.set(key, valid)
    return valid


async def resolve_procedure_name(name: str, session: Any, cache: Cache[str]) -> str:
    cached = cache.get(name)
    if cached:
        _logger.debug("cache_hit=procedure_name key=%s resolved=%s", name, cached)
        return cached
    _logger.debug("cache_miss=procedure_name key=%s", name)
    binds = {
        "name": Bind.string(name),
        "resolved": Bind(Direction.OUT, BindKind.STRING, max_size=RESOLVED_NAME_MAX_LEN),
    }
    try:
        result = await session.execute(SQL_RESOLVE_NAME, binds, query_name="procedure.name_resolve")
    except Exception as exc:
        raise RequestError(f'Procedure "{name}" not found or not accessible.\n{error_to_string(exc)}') from exc
    resolved = result.get("resolved")
    if not isinstance(resolved, str) or not resolved:
        raise RequestError(f'Could not resolve procedure name "{name}"')
    cache.set(name, resolved)
    return resolved


async def sanitize_proc_name(
    raw_name: str,
    session: Any,
    config: HandlerConfig,
    caches: ResolverCaches,
) -> str:
    name = sanitize_name(raw_name)
    check_exclusions(name, raw_name, config.exclusion_list)
    if config.request_validation_function:
        valid = await request_valid(name, config.request_validation_function, session, caches.validation)
        if not valid:
            raise RequestError(
                f'Procedure name "{raw_name}" is not valid according to the request validation function "{config.request_validation_function}"'
            )
    return await resolve_procedure_name(name, session, caches.names)


async def load_arguments(procedure: str, session: Any) -> ArgumentTypes:
    binds = {
        "name": Bind.string(procedure),
        "names": Bind(Direction.OUT, BindKind.STRING, array=True, max_size=ARGUMENT_NAME_MAX_LEN, max_array_size=MAX_PROCEDURE_PARAMETERS),
        "types": Bind(Direction.OUT, BindKind.STRING, array=True, max_size=ARGUMENT_NAME_MAX_LEN, max_array_size=MAX_PROCEDURE_PARAMETERS),
    }
    try:
        result = await session.execute(SQL_GET_ARGUMENTS, binds, query_name="procedure.arguments")
    except Exception as exc:
        raise RequestError(f"Error when retrieving arguments\n{SQL_GET_ARGUMENTS}\n{error_to_string(exc)}") from exc
    names = result.get("names")
    types = result.get("types")
    if not isinstance(names, list) or not isinstance(types, list):
        raise RequestError(f"Error when decoding arguments {result!r}")
    if len(names) != len(types):
        raise RequestError("Error when decoding arguments. The number of names and types does not match")
    return {arg.lower(): arg_type for arg, arg_type in zip(names, types) if arg and arg_type}


async def find_arguments(procedure: str, session: Any, cache: Cache[ArgumentTypes]) -> ArgumentTypes:
    key = procedure.upper()
    cached = cache.get(key)
    if cached is not None:
        return cached
    _logger.debug("cache_miss=arguments key=%s", key)
    args = await load_arguments(procedure, session)
    cache.set(key, args)
    return args


def is_table_type(arg_type: str | None) -> bool:
    return bool(arg_type) and arg_type.upper() in TABLE_TYPES


def get_binding(value: ArgValue, arg_type: str | None) -> Bind:
    if is_table_type(arg_type) or isinstance(value, list):
        return Bind.string_table([value] if isinstance(value, str) else value)
    return Bind.string(value)


def get_procedure_named(name: str, args: Mapping[str, ArgValue], arg_types: ArgumentTypes) -> ProcedureCall:
    parameters: List[str] = []
    binds: BindMap = {}
    for key, value in args.items():
        if not _ARGUMENT_NAME_RE.match(key) or len(key) > ARGUMENT_NAME_MAX_LEN:
            raise RequestError(f'Invalid argument name "{key}" for procedure "{name}"')
        parameter = f"p_{key}"
        arg_type = arg_types.get(key.lower())
        if arg_type is None:
            _logger.warning("procedure_unknown_argument procedure=%s argument=%s known=%s", name, key, sorted(arg_types))
        binds[parameter] = get_binding(value, arg_type)
        parameters.append(f"{key}=>:{parameter}")
    return ProcedureCall(sql=f"{name}({', '.join(parameters)})", binds=binds, resolved_name=name)


def get_procedure_variable(name: str, args: Mapping[str, ArgValue]) -> ProcedureCall:
    names: List[str] = []
    values: List[str] = []
    for key, value in args.items():
        if isinstance(value, str):
            names.append(key)
            values.append(value)
        elif isinstance(value, list):
            for item in value:
                names.append(key)
                values.append(item)
    return ProcedureCall(
        sql=f"{name}(:argnames, :argvalues)",
        binds={"argnames": Bind.string_table(names), "argvalues": Bind.string_table(values)},
        resolved_name=name,
    )


async def get_procedure(
    raw_name: str,
    args: Mapping[str, ArgValue],
    config: HandlerConfig,
    session: Any,
    caches: ResolverCaches,
) -> ProcedureCall:
    if config.path_alias and config.path_alias.lower() == raw_name.lower():
        _logger.debug("procedure_path_alias alias=%s procedure=%s", config.path_alias, config.path_alias_procedure)
        return ProcedureCall(
            sql=f"{config.path_alias_procedure}(p_path=>:p_path)",
            binds={"p_path": Bind.string(raw_name)},
        )

    variable = raw_name.startswith(VARIABLE_ARGUMENTS_MARKER)
    name = raw_name[len(VARIABLE_ARGUMENTS_MARKER) :] if variable else raw_name
    resolved = await sanitize_proc_name(name, session, config, caches)

    if variable:
        return get_procedure_variable(resolved, args)
    arg_types = await find_arguments(resolved, session, caches.arguments)
    return get_procedure_named(resolved, args, arg_types)
