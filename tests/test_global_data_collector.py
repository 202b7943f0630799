from profcore.constants import ResourceType
from profcore.global_data_collector import GlobalDataCollector, parse_origin
from profcore.profile_schema import Lib, RawThread


def test_index_for_source_dedup(collector):
    assert collector.index_for_source(None, 'file1.js') == 0
    assert collector.index_for_source('uuid2', 'file2.js') == 1
    # The uuid takes priority over the file name.
    assert collector.index_for_source('uuid3', 'file1.js') == 2
    assert collector.index_for_source(None, 'file1.js') == 0
    assert collector.index_for_source('uuid2', 'file2.js') == 1

    shared = collector.finish().shared
    assert shared.sources.length == 3
    assert shared.sources.uuid == [None, 'uuid2', 'uuid3']
    assert [shared.string_array[i] for i in shared.sources.filename] == [
        'file1.js', 'file2.js', 'file1.js'
    ]


def test_index_for_lib(collector):
    lib = Lib(arch='x86_64', name='libxul.so', path='/usr/lib/libxul.so',
              debug_name='libxul.so', debug_path='/usr/lib/libxul.so',
              breakpad_id='ABCD')
    other = Lib(name='libc.so', debug_name='libc.so', breakpad_id='EF01')
    assert collector.index_for_lib(lib) == 0
    assert collector.index_for_lib(other) == 1
    assert collector.index_for_lib(lib) == 0
    libs = collector.finish().libs
    assert [l.name for l in libs] == ['libxul.so', 'libc.so']


def test_index_for_func_dedup(collector):
    name = collector.get_string_table().index_for_string('foo')
    args = dict(name=name, is_js=True, relevant_for_js=False, resource=-1,
                source=None, line_number=3, column_number=None)
    assert collector.index_for_func(**args) == 0
    assert collector.index_for_func(**args) == 0
    assert collector.index_for_func(**dict(args, line_number=4)) == 1
    assert collector.func_table.length == 2
    assert collector.func_table.line_number == [3, 4]


def test_parse_origin():
    assert parse_origin('https://example.com/a/b.js') == \
        ('https://example.com', 'example.com')
    assert parse_origin('http://example.com:80/x') == \
        ('http://example.com', 'example.com')
    assert parse_origin('http://localhost:8000/x') == \
        ('http://localhost:8000', 'localhost:8000')
    assert parse_origin('chrome://browser/content/x.js') is None
    assert parse_origin('a.js') is None


def test_index_for_uri_resource(collector):
    string_array = collector.get_string_table().array
    first = collector.index_for_uri_resource('https://example.com/a.js')
    second = collector.index_for_uri_resource('https://example.com/b.js')
    chrome = collector.index_for_uri_resource('chrome://global/x.js')
    assert first == second
    assert chrome != first

    resources = collector.resource_table
    assert resources.type[first] == ResourceType.WEBHOST
    assert string_array[resources.name[first]] == 'https://example.com'
    assert string_array[resources.host[first]] == 'example.com'
    assert resources.type[chrome] == ResourceType.URL
    assert string_array[resources.name[chrome]] == 'chrome://global/x.js'
    assert resources.host[chrome] is None


def test_lib_resources(collector):
    string_array = collector.get_string_table().array
    lib_index = collector.index_for_lib(Lib(name='libfoo.so',
                                            debug_name='libfoo.so'))
    resource = collector.index_for_lib_resource(lib_index)
    assert collector.index_for_lib_resource(lib_index) == resource
    assert collector.resource_table.lib[resource] == lib_index
    assert collector.resource_table.type[resource] == ResourceType.LIBRARY

    name_index = collector.get_string_table().index_for_string('libbar.so')
    name_only = collector.index_for_name_only_lib_resource(name_index)
    assert collector.index_for_name_only_lib_resource(name_index) == name_only
    assert collector.resource_table.lib[name_only] is None
    assert string_array[collector.resource_table.name[name_only]] == \
        'libbar.so'


def test_index_for_native_symbol(collector):
    name = collector.get_string_table().index_for_string('memcpy')
    first = collector.index_for_native_symbol(0, 0x1000, name, 64)
    assert collector.index_for_native_symbol(0, 0x1000, name, 64) == first
    assert collector.index_for_native_symbol(0, 0x2000, name, 64) != first
    assert collector.native_symbols.length == 2


def test_add_extension_origins(collector):
    string_array = collector.get_string_table().array
    collector.add_extension_origins({
        'baseURL': ['moz-extension://1234/'],
        'id': ['ublock@example.org'],
        'name': ['uBlock'],
        'length': 1,
    })
    resource = collector.index_for_uri_resource(
        'moz-extension://1234/content.js')
    resources = collector.resource_table
    assert resources.length == 1
    assert resources.type[resource] == ResourceType.ADDON
    assert string_array[resources.name[resource]] == \
        'Extension "uBlock" (ID: ublock@example.org)'
    assert string_array[resources.host[resource]] == 'ublock@example.org'


def test_thread_collector_fills_the_thread_tables():
    collector = GlobalDataCollector()
    thread = RawThread()
    thread_collector = collector.for_thread(thread)
    name = thread_collector.get_string_table().index_for_string('foo')
    thread_collector.index_for_func(name=name, is_js=False,
                                    relevant_for_js=False, resource=-1,
                                    source=None, line_number=None,
                                    column_number=None)
    thread_collector.index_for_source(None, 'foo.js')

    assert thread.func_table.length == 1
    # Funcs are per thread, strings and sources are shared.
    assert collector.func_table.length == 0
    shared = collector.finish().shared
    assert shared.string_array == ['foo', 'foo.js']
    assert shared.sources.length == 1
