import json
from dataclasses import dataclass, field
from urllib.parse import urlsplit

from profcore.constants import ResourceType
from profcore.profile_schema import (
    FrameTable,
    FuncTable,
    Lib,
    NativeSymbolTable,
    RawStackTable,
    ResourceTable,
    SourceTable,
)
from profcore.string_table import StringTable

_WEB_SCHEMES = {'http', 'https', 'moz-extension'}
_DEFAULT_PORTS = {'http': 80, 'https': 443}


def parse_origin(uri):
    """Returns (origin, host) for http, https and moz-extension URIs, and
    None for anything else."""
    try:
        parts = urlsplit(uri)
        port = parts.port
    except ValueError:
        return None
    if parts.scheme not in _WEB_SCHEMES or not parts.hostname:
        return None
    host = parts.hostname
    if port is not None and port != _DEFAULT_PORTS.get(parts.scheme):
        host = '{}:{}'.format(host, port)
    return '{}://{}'.format(parts.scheme, host), host


@dataclass
class CollectedSharedData:
    stack_table: RawStackTable
    frame_table: FrameTable
    func_table: FuncTable
    resource_table: ResourceTable
    native_symbols: NativeSymbolTable
    string_array: list[str]
    sources: SourceTable


@dataclass
class CollectedData:
    libs: list[Lib] = field(default_factory=list)
    shared: CollectedSharedData | None = None


class GlobalDataCollector(object):
    """Interns the entities of a profile while it is being built.

    Libraries, strings and sources are global to the profile. Funcs,
    resources, native symbols, frames and stacks are collected in the tables
    of this collector; `for_thread()` gives a collector that fills the tables
    of one thread instead and still shares libraries, strings and sources
    with this one.

    Once `finish()` has been called the collector must not be used again.
    """

    def __init__(self):
        self._libs = []
        self._lib_key_to_lib_index = {}
        self._string_array = []
        self._string_table = StringTable(self._string_array)
        self._sources = SourceTable()
        self._source_key_to_source_index = {}
        self._init_tables()

    def _init_tables(self):
        self._func_table = FuncTable()
        self._func_key_to_func_index = {}
        self._resource_table = ResourceTable()
        self._origin_to_resource_index = {}
        self._lib_to_resource_index = {}
        self._lib_name_to_resource_index = {}
        self._native_symbols = NativeSymbolTable()
        self._native_symbol_key_to_index = {}
        self._frame_table = FrameTable()
        self._stack_table = RawStackTable()

    def for_thread(self, thread):
        return ThreadDataCollector(self, thread)

    def get_string_table(self) -> StringTable:
        return self._string_table

    @property
    def func_table(self):
        return self._func_table

    @property
    def resource_table(self):
        return self._resource_table

    @property
    def native_symbols(self):
        return self._native_symbols

    @property
    def frame_table(self):
        return self._frame_table

    @property
    def stack_table(self):
        return self._stack_table

    def index_for_lib(self, lib) -> int:
        """Returns the global index for this library, adding it to the list
        if necessary. `lib` is anything with the attributes of a Lib."""
        lib_key = '{}/{}'.format(lib.debug_name, lib.breakpad_id)
        index = self._lib_key_to_lib_index.get(lib_key)
        if index is None:
            index = len(self._libs)
            self._libs.append(Lib(
                arch=lib.arch,
                name=lib.name,
                path=lib.path,
                debug_name=lib.debug_name,
                debug_path=lib.debug_path,
                breakpad_id=lib.breakpad_id,
                code_id=getattr(lib, 'code_id', None),
            ))
            self._lib_key_to_lib_index[lib_key] = index
        return index

    def index_for_func(self, name, is_js, relevant_for_js, resource, source,
                       line_number, column_number, file_name=None) -> int:
        func_key = (name, is_js, relevant_for_js, resource, source,
                    line_number, column_number)
        index = self._func_key_to_func_index.get(func_key)
        if index is None:
            index = self._func_table.add_row(
                name=name,
                is_js=is_js,
                relevant_for_js=relevant_for_js,
                resource=resource,
                file_name=file_name,
                source=source,
                line_number=line_number,
                column_number=column_number,
            )
            self._func_key_to_func_index[func_key] = index
        return index

    def index_for_source(self, uuid, filename: str) -> int:
        filename_index = self._string_table.index_for_string(filename)
        if uuid is not None:
            source_key = ('uuid', uuid)
        else:
            source_key = ('filename', filename_index)
        index = self._source_key_to_source_index.get(source_key)
        if index is None:
            index = self._sources.add_row(uuid=uuid, filename=filename_index)
            self._source_key_to_source_index[source_key] = index
        return index

    def index_for_uri_resource(self, script_uri: str) -> int:
        parsed = parse_origin(script_uri)
        if parsed is not None:
            origin, host = parsed
        else:
            origin, host = script_uri, None

        index = self._origin_to_resource_index.get(origin)
        if index is not None:
            return index

        if host is not None:
            index = self._resource_table.add_row(
                lib=None,
                name=self._string_table.index_for_string(origin),
                host=self._string_table.index_for_string(host),
                type=ResourceType.WEBHOST,
            )
        else:
            # A URL that doesn't point to the web, e.g. a chrome:// url.
            index = self._resource_table.add_row(
                lib=None,
                name=self._string_table.index_for_string(script_uri),
                host=None,
                type=ResourceType.URL,
            )
        self._origin_to_resource_index[origin] = index
        return index

    def index_for_lib_resource(self, lib_index: int) -> int:
        index = self._lib_to_resource_index.get(lib_index)
        if index is None:
            index = self._resource_table.add_row(
                lib=lib_index,
                name=self._string_table.index_for_string(
                    self._libs[lib_index].name),
                host=None,
                type=ResourceType.LIBRARY,
            )
            self._lib_to_resource_index[lib_index] = index
        return index

    def index_for_name_only_lib_resource(self, name_index: int) -> int:
        index = self._lib_name_to_resource_index.get(name_index)
        if index is None:
            index = self._resource_table.add_row(
                lib=None,
                name=name_index,
                host=None,
                type=ResourceType.LIBRARY,
            )
            self._lib_name_to_resource_index[name_index] = index
        return index

    def index_for_native_symbol(self, lib_index, address, name,
                                function_size) -> int:
        key = '{}-{}-{}-{}'.format(lib_index, address, name, function_size)
        index = self._native_symbol_key_to_index.get(key)
        if index is None:
            index = self._native_symbols.add_row(
                lib_index=lib_index,
                address=address,
                name=name,
                function_size=function_size,
            )
            self._native_symbol_key_to_index[key] = index
        return index

    def add_extension_origins(self, extensions):
        """Seeds addon resources for known extensions.

        `extensions` is the columnar extension table of the profile meta:
        {"baseURL": [...], "id": [...], "name": [...], "length": n}.
        """
        for i in range(extensions.get('length', len(extensions['baseURL']))):
            parsed = parse_origin(extensions['baseURL'][i])
            origin = parsed[0] if parsed is not None \
                else extensions['baseURL'][i]
            if origin in self._origin_to_resource_index:
                continue
            extension_id = extensions['id'][i]
            name = 'Extension {} (ID: {})'.format(
                json.dumps(extensions['name'][i]), extension_id)
            index = self._resource_table.add_row(
                lib=None,
                name=self._string_table.index_for_string(name),
                host=self._string_table.index_for_string(extension_id),
                type=ResourceType.ADDON,
            )
            self._origin_to_resource_index[origin] = index

    def finish(self) -> CollectedData:
        return CollectedData(
            libs=self._libs,
            shared=CollectedSharedData(
                stack_table=self._stack_table,
                frame_table=self._frame_table,
                func_table=self._func_table,
                resource_table=self._resource_table,
                native_symbols=self._native_symbols,
                string_array=self._string_array,
                sources=self._sources,
            ),
        )


class ThreadDataCollector(GlobalDataCollector):
    """Interns funcs, resources and native symbols directly into the tables
    of one (freshly created) thread.

    Libraries, strings and sources go into the parent collector.
    """

    def __init__(self, parent: GlobalDataCollector, thread):
        self._libs = parent._libs
        self._lib_key_to_lib_index = parent._lib_key_to_lib_index
        self._string_array = parent._string_array
        self._string_table = parent._string_table
        self._sources = parent._sources
        self._source_key_to_source_index = parent._source_key_to_source_index
        self._init_tables()
        self._func_table = thread.func_table
        self._resource_table = thread.resource_table
        self._native_symbols = thread.native_symbols
        self._frame_table = thread.frame_table
        self._stack_table = thread.stack_table
