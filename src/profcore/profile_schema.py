import dataclasses
from dataclasses import dataclass, field
from itertools import accumulate
from typing import Any, ClassVar

from profcore.constants import INSTANT
from profcore.errors import ProfileFormatError, TableLengthError

MarkerPhase = int
MarkerPayload = dict[str, Any]


@dataclass
class Table:
    """Base class for the columnar tables of a profile.

    Every column is a list and all of them share `length`. Subclasses list
    their columns in `columns` (attribute name -> wire key). Columns listed in
    `optional_columns` may be None, in which case the table doesn't have them.
    """

    columns: ClassVar[dict[str, str]] = {}
    optional_columns: ClassVar[dict[str, str]] = {}
    # Value used to fill a column that is missing from the wire format.
    defaults: ClassVar[dict[str, Any]] = {}

    length: int = 0

    def present_columns(self) -> list[str]:
        names = list(self.columns)
        names.extend(name for name in self.optional_columns
                     if getattr(self, name) is not None)
        return names

    def add_row(self, **values) -> int:
        unknown = set(values) - set(self.columns) - set(self.optional_columns)
        if unknown:
            raise TypeError('{} has no columns {}'.format(
                type(self).__name__, sorted(unknown)))
        missing = [name for name in self.columns if name not in values]
        if missing:
            raise TypeError('{}.add_row() is missing columns {}'.format(
                type(self).__name__, missing))
        for name in self.columns:
            getattr(self, name).append(values[name])
        for name in self.optional_columns:
            column = getattr(self, name)
            if column is not None:
                column.append(values.get(name))
        self.length += 1
        return self.length - 1

    def row(self, index: int) -> dict[str, Any]:
        return {name: getattr(self, name)[index]
                for name in self.present_columns()}

    def check_lengths(self):
        for name in self.present_columns():
            column_length = len(getattr(self, name))
            if column_length != self.length:
                raise TableLengthError(
                    '{}.{} has {} entries but the table length is {}'.format(
                        type(self).__name__, name, column_length, self.length))

    def clone(self):
        copied = {name: list(getattr(self, name))
                  for name in self.present_columns()}
        return dataclasses.replace(self, **copied)

    def json(self):
        result = {}
        for name, key in self.columns.items():
            result[key] = getattr(self, name)
        for name, key in self.optional_columns.items():
            column = getattr(self, name)
            if column is not None:
                result[key] = column
        result["length"] = self.length
        return result

    @classmethod
    def _length_from_json(cls, data: dict) -> int:
        if data.get('length') is not None:
            return data['length']
        for key in cls.columns.values():
            if data.get(key) is not None:
                return len(data[key])
        return 0

    @classmethod
    def from_json(cls, data: dict):
        if not isinstance(data, dict):
            raise ProfileFormatError('{} must be a JSON object'.format(
                cls.__name__))
        length = cls._length_from_json(data)
        kwargs: dict[str, Any] = {'length': length}
        for name, key in cls.columns.items():
            if data.get(key) is not None:
                kwargs[name] = list(data[key])
            else:
                kwargs[name] = [cls.defaults.get(name)] * length
        for name, key in cls.optional_columns.items():
            if data.get(key) is not None:
                kwargs[name] = list(data[key])
            else:
                kwargs[name] = None
        table = cls(**kwargs)
        try:
            table.check_lengths()
        except TableLengthError as e:
            raise ProfileFormatError(str(e)) from e
        return table


@dataclass
class SamplesTable(Table):
    columns: ClassVar[dict[str, str]] = {
        "stack": "stack",
        "time": "time",
    }
    optional_columns: ClassVar[dict[str, str]] = {
        "weight": "weight",
        "event_delay": "eventDelay",
        "thread_id": "threadId",
    }

    stack: list[int | None] = field(default_factory=list)
    time: list[float] = field(default_factory=list)
    weight: list[float] | None = None
    weight_type: str = "samples"
    event_delay: list[float | None] | None = field(default_factory=list)
    thread_id: list[int | str | None] | None = None

    def json(self):
        result = super().json()
        result["weightType"] = self.weight_type
        return result

    @classmethod
    def from_json(cls, data: dict):
        if isinstance(data, dict) and data.get('time') is None \
                and data.get('timeDeltas') is not None:
            data = dict(data)
            data['time'] = list(accumulate(data.pop('timeDeltas')))
        table = super().from_json(data)
        table.weight_type = data.get('weightType') or 'samples'
        return table


@dataclass
class RawMarkerTable(Table):
    columns: ClassVar[dict[str, str]] = {
        "data": "data",
        "name": "name",
        "start_time": "startTime",
        "end_time": "endTime",
        "phase": "phase",
        "category": "category",
    }
    optional_columns: ClassVar[dict[str, str]] = {
        "thread_id": "threadId",
    }
    defaults: ClassVar[dict[str, Any]] = {
        "phase": INSTANT,
        "category": 0,
    }

    data: list[MarkerPayload | None] = field(default_factory=list)
    name: list[int] = field(default_factory=list)
    start_time: list[float | None] = field(default_factory=list)
    end_time: list[float | None] = field(default_factory=list)
    phase: list[MarkerPhase] = field(default_factory=list)
    category: list[int] = field(default_factory=list)
    thread_id: list[int | str | None] | None = None

    def add_instant_marker(self, string_table, name: str, time: float,
                           category: int, data: MarkerPayload | None):
        return self.add_row(name=string_table.index_for_string(name),
                            start_time=time,
                            end_time=None,
                            phase=INSTANT,
                            category=category,
                            data=data)


@dataclass
class RawStackTable(Table):
    columns: ClassVar[dict[str, str]] = {
        "frame": "frame",
        "prefix": "prefix",
    }

    frame: list[int] = field(default_factory=list)
    prefix: list[int | None] = field(default_factory=list)


@dataclass
class FrameTable(Table):
    columns: ClassVar[dict[str, str]] = {
        "address": "address",
        "inline_depth": "inlineDepth",
        "category": "category",
        "subcategory": "subcategory",
        "func": "func",
        "native_symbol": "nativeSymbol",
        "inner_window_id": "innerWindowID",
        "line": "line",
        "column": "column",
    }
    defaults: ClassVar[dict[str, Any]] = {
        "address": -1,
        "inline_depth": 0,
        "inner_window_id": 0,
    }

    address: list[int] = field(default_factory=list)
    inline_depth: list[int] = field(default_factory=list)
    category: list[int | None] = field(default_factory=list)
    subcategory: list[int | None] = field(default_factory=list)
    func: list[int] = field(default_factory=list)
    native_symbol: list[int | None] = field(default_factory=list)
    inner_window_id: list[int | None] = field(default_factory=list)
    line: list[int | None] = field(default_factory=list)
    column: list[int | None] = field(default_factory=list)


@dataclass
class FuncTable(Table):
    columns: ClassVar[dict[str, str]] = {
        "name": "name",
        "is_js": "isJS",
        "relevant_for_js": "relevantForJS",
        "resource": "resource",
        "file_name": "fileName",
        "source": "source",
        "line_number": "lineNumber",
        "column_number": "columnNumber",
    }
    defaults: ClassVar[dict[str, Any]] = {
        "is_js": False,
        "relevant_for_js": False,
        "resource": -1,
    }

    name: list[int] = field(default_factory=list)
    is_js: list[bool] = field(default_factory=list)
    relevant_for_js: list[bool] = field(default_factory=list)
    resource: list[int] = field(default_factory=list)
    file_name: list[int | None] = field(default_factory=list)
    source: list[int | None] = field(default_factory=list)
    line_number: list[int | None] = field(default_factory=list)
    column_number: list[int | None] = field(default_factory=list)


@dataclass
class ResourceTable(Table):
    columns: ClassVar[dict[str, str]] = {
        "lib": "lib",
        "name": "name",
        "host": "host",
        "type": "type",
    }
    defaults: ClassVar[dict[str, Any]] = {
        "type": 0,
    }

    lib: list[int | None] = field(default_factory=list)
    name: list[int] = field(default_factory=list)
    host: list[int | None] = field(default_factory=list)
    type: list[int] = field(default_factory=list)


@dataclass
class NativeSymbolTable(Table):
    columns: ClassVar[dict[str, str]] = {
        "lib_index": "libIndex",
        "address": "address",
        "name": "name",
        "function_size": "functionSize",
    }

    lib_index: list[int] = field(default_factory=list)
    address: list[int] = field(default_factory=list)
    name: list[int] = field(default_factory=list)
    function_size: list[int | None] = field(default_factory=list)


@dataclass
class SourceTable(Table):
    columns: ClassVar[dict[str, str]] = {
        "uuid": "uuid",
        "filename": "filename",
    }

    uuid: list[str | None] = field(default_factory=list)
    filename: list[int] = field(default_factory=list)


@dataclass
class Lib:
    arch: str = ""
    name: str = ""
    path: str = ""
    debug_name: str = ""
    debug_path: str = ""
    breakpad_id: str = ""
    code_id: str | None = None

    def json(self):
        return {
            "arch": self.arch,
            "name": self.name,
            "path": self.path,
            "debugName": self.debug_name,
            "debugPath": self.debug_path,
            "breakpadId": self.breakpad_id,
            "codeId": self.code_id,
        }

    @staticmethod
    def from_json(data: dict):
        return Lib(
            arch=data.get('arch', ''),
            name=data.get('name', ''),
            path=data.get('path', ''),
            debug_name=data.get('debugName', ''),
            debug_path=data.get('debugPath', ''),
            breakpad_id=data.get('breakpadId', ''),
            code_id=data.get('codeId'),
        )


@dataclass
class MarkerSchemaField:
    key: str = ""
    label: str | None = None
    format: str = "string"
    hidden: bool | None = None

    def json(self):
        result = {"key": self.key, "format": self.format}
        if self.label is not None:
            result["label"] = self.label
        if self.hidden is not None:
            result["hidden"] = self.hidden
        return result

    @staticmethod
    def from_json(data: dict):
        return MarkerSchemaField(
            key=data.get('key', ''),
            label=data.get('label'),
            format=data.get('format', 'string'),
            hidden=data.get('hidden'),
        )


@dataclass
class MarkerSchema:
    name: str = ""
    display: list[str] = field(default_factory=list)
    chart_label: str | None = None
    tooltip_label: str | None = None
    table_label: str | None = None
    description: str | None = None
    fields: list[MarkerSchemaField] = field(default_factory=list)
    # Keys we don't interpret, e.g. "graphs" or "colorField".
    extra: dict[str, Any] = field(default_factory=dict)

    def json(self):
        result = {"name": self.name, "display": self.display}
        for key, value in (("chartLabel", self.chart_label),
                           ("tooltipLabel", self.tooltip_label),
                           ("tableLabel", self.table_label),
                           ("description", self.description)):
            if value is not None:
                result[key] = value
        result["fields"] = [f.json() for f in self.fields]
        result.update(self.extra)
        return result

    @staticmethod
    def from_json(data: dict):
        known = {'name', 'display', 'chartLabel', 'tooltipLabel', 'tableLabel',
                 'description', 'fields'}
        return MarkerSchema(
            name=data.get('name', ''),
            display=list(data.get('display', [])),
            chart_label=data.get('chartLabel'),
            tooltip_label=data.get('tooltipLabel'),
            table_label=data.get('tableLabel'),
            description=data.get('description'),
            fields=[MarkerSchemaField.from_json(f)
                    for f in data.get('fields', [])],
            extra={k: v for k, v in data.items() if k not in known},
        )


@dataclass
class Category:
    name: str = field(default_factory=str)
    color: str = field(default_factory=str)
    subcategories: list[str] = field(default_factory=list)

    def json(self):
        return {
            "name": self.name,
            "color": self.color,
            "subcategories": self.subcategories
        }

    @staticmethod
    def from_json(data: dict):
        return Category(
            name=data.get('name', ''),
            color=data.get('color', 'grey'),
            subcategories=list(data.get('subcategories', [])),
        )


@dataclass
class ProfileMeta:
    interval: float = 1.0
    start_time: float = 0
    process_type: int = field(default_factory=int)
    product: str = field(default_factory=str)
    stackwalk: int = field(default_factory=int)
    version: int = field(default_factory=int)
    preprocessed_profile_version: int = field(default_factory=int)
    marker_schema: list[MarkerSchema] = field(default_factory=list)
    categories: list[Category] = field(default_factory=list)
    imported_from: str | None = None
    profiling_start_time: float | None = None
    profiling_end_time: float | None = None
    # None means the symbolication status is unknown.
    symbolicated: bool | None = None
    initial_visible_threads: list[int] | None = None
    # Meta keys we don't interpret are carried through unchanged.
    extra: dict[str, Any] = field(default_factory=dict)

    _wire_keys: ClassVar[dict[str, str]] = {
        "interval": "interval",
        "start_time": "startTime",
        "process_type": "processType",
        "product": "product",
        "stackwalk": "stackwalk",
        "version": "version",
        "preprocessed_profile_version": "preprocessedProfileVersion",
        "imported_from": "importedFrom",
        "profiling_start_time": "profilingStartTime",
        "profiling_end_time": "profilingEndTime",
        "symbolicated": "symbolicated",
        "initial_visible_threads": "initialVisibleThreads",
    }

    def json(self):
        result = {}
        for name, key in self._wire_keys.items():
            value = getattr(self, name)
            if value is not None:
                result[key] = value
        result["markerSchema"] = [s.json() for s in self.marker_schema]
        result["categories"] = [c.json() for c in self.categories]
        result.update(self.extra)
        return result

    @staticmethod
    def from_json(data: dict):
        if not isinstance(data, dict):
            raise ProfileFormatError('profile meta must be a JSON object')
        meta = ProfileMeta()
        for name, key in ProfileMeta._wire_keys.items():
            if key in data:
                setattr(meta, name, data[key])
        meta.marker_schema = [MarkerSchema.from_json(s)
                              for s in data.get('markerSchema') or []]
        meta.categories = [Category.from_json(c)
                           for c in data.get('categories') or []]
        known = set(ProfileMeta._wire_keys.values())
        known.update(('markerSchema', 'categories'))
        meta.extra = {k: v for k, v in data.items() if k not in known}
        return meta


@dataclass
class ProfileSharedData:
    string_array: list[str] = field(default_factory=list)
    sources: SourceTable | None = field(default_factory=SourceTable)

    def json(self):
        result = {"stringArray": self.string_array}
        if self.sources is not None:
            result["sources"] = self.sources.json()
        return result

    @staticmethod
    def from_json(data: dict):
        sources = data.get('sources')
        return ProfileSharedData(
            string_array=list(data.get('stringArray', [])),
            sources=SourceTable.from_json(sources)
            if sources is not None else None,
        )


@dataclass
class RawThread:
    process_type: str = "default"
    process_startup_time: float = 0
    process_shutdown_time: float | None = None
    register_time: float = 0
    unregister_time: float | None = None
    paused_ranges: list[dict] = field(default_factory=list)
    show_markers_in_timeline: bool | None = None
    name: str = field(default_factory=str)
    is_main_thread: bool = field(default_factory=bool)
    process_name: str | None = None
    pid: int | str = 0
    tid: int | str = 0
    samples: SamplesTable = field(default_factory=SamplesTable)
    markers: RawMarkerTable = field(default_factory=RawMarkerTable)
    stack_table: RawStackTable = field(default_factory=RawStackTable)
    frame_table: FrameTable = field(default_factory=FrameTable)
    func_table: FuncTable = field(default_factory=FuncTable)
    resource_table: ResourceTable = field(default_factory=ResourceTable)
    native_symbols: NativeSymbolTable = field(
        default_factory=NativeSymbolTable)

    def copy(self):
        """Shallow copy: the tables are shared until one of them is replaced."""
        return dataclasses.replace(self)

    def json(self):
        result = {
            "processType": self.process_type,
            "processStartupTime": self.process_startup_time,
            "processShutdownTime": self.process_shutdown_time,
            "registerTime": self.register_time,
            "unregisterTime": self.unregister_time,
            "pausedRanges": self.paused_ranges,
            "name": self.name,
            "isMainThread": self.is_main_thread,
            "pid": self.pid,
            "tid": self.tid,
            "samples": self.samples.json(),
            "markers": self.markers.json(),
            "stackTable": self.stack_table.json(),
            "frameTable": self.frame_table.json(),
            "funcTable": self.func_table.json(),
            "resourceTable": self.resource_table.json(),
            "nativeSymbols": self.native_symbols.json(),
        }
        if self.process_name is not None:
            result["processName"] = self.process_name
        if self.show_markers_in_timeline is not None:
            result["showMarkersInTimeline"] = self.show_markers_in_timeline
        return result

    @staticmethod
    def from_json(data: dict):
        if not isinstance(data, dict):
            raise ProfileFormatError('a thread must be a JSON object')
        if 'stringArray' in data or 'stringTable' in data:
            raise ProfileFormatError(
                'threads with their own string table come from an older '
                'profile version, which is not supported')
        return RawThread(
            process_type=data.get('processType', 'default'),
            process_startup_time=data.get('processStartupTime', 0),
            process_shutdown_time=data.get('processShutdownTime'),
            register_time=data.get('registerTime', 0),
            unregister_time=data.get('unregisterTime'),
            paused_ranges=list(data.get('pausedRanges', [])),
            show_markers_in_timeline=data.get('showMarkersInTimeline'),
            name=data.get('name', ''),
            is_main_thread=bool(data.get('isMainThread', False)),
            process_name=data.get('processName'),
            pid=data.get('pid', 0),
            tid=data.get('tid', 0),
            samples=SamplesTable.from_json(data.get('samples', {})),
            markers=RawMarkerTable.from_json(data.get('markers', {})),
            stack_table=RawStackTable.from_json(data.get('stackTable', {})),
            frame_table=FrameTable.from_json(data.get('frameTable', {})),
            func_table=FuncTable.from_json(data.get('funcTable', {})),
            resource_table=ResourceTable.from_json(
                data.get('resourceTable', {})),
            native_symbols=NativeSymbolTable.from_json(
                data.get('nativeSymbols', {})),
        )


@dataclass
class Profile:
    meta: ProfileMeta = field(default_factory=ProfileMeta)
    libs: list[Lib] = field(default_factory=list)
    shared: ProfileSharedData = field(default_factory=ProfileSharedData)
    threads: list[RawThread] = field(default_factory=list)

    def json(self):
        return {
            "meta": self.meta.json(),
            "libs": [l.json() for l in self.libs],
            "shared": self.shared.json(),
            "threads": [t.json() for t in self.threads]
        }

    @staticmethod
    def from_json(data: dict):
        if not isinstance(data, dict):
            raise ProfileFormatError('a profile must be a JSON object')
        if not isinstance(data.get('threads'), list):
            raise ProfileFormatError('the profile has no thread list')
        return Profile(
            meta=ProfileMeta.from_json(data.get('meta', {})),
            libs=[Lib.from_json(l) for l in data.get('libs', [])],
            shared=ProfileSharedData.from_json(data.get('shared', {})),
            threads=[RawThread.from_json(t) for t in data['threads']],
        )


def empty_profile() -> Profile:
    return Profile(meta=ProfileMeta(interval=1, symbolicated=True))
