import pytest

from profcore.compacting import compute_compacted_profile
from profcore.constants import INSTANT
from profcore.profile_schema import (
    MarkerSchema,
    MarkerSchemaField,
    RawThread,
    SourceTable,
    empty_profile,
)


def add_func(thread, name, file_name=None):
    return thread.func_table.add_row(name=name, is_js=False,
                                     relevant_for_js=False, resource=-1,
                                     file_name=file_name, source=None,
                                     line_number=None, column_number=None)


def add_marker(thread, name, data=None):
    return thread.markers.add_row(name=name, start_time=0, end_time=None,
                                  phase=INSTANT, category=0, data=data)


def resolve_strings(profile):
    """Returns every string referenced by the profile, resolved."""
    strings = profile.shared.string_array
    result = []
    for thread in profile.threads:
        result.append([strings[i] for i in thread.markers.name])
        result.append([strings[i] for i in thread.func_table.name])
        result.append([None if i is None else strings[i]
                       for i in thread.func_table.file_name])
        result.append([strings[i] for i in thread.resource_table.name])
        result.append([None if i is None else strings[i]
                       for i in thread.resource_table.host])
        result.append([strings[i] for i in thread.native_symbols.name])
        result.append([
            strings[d['name']] for d in thread.markers.data
            if d and d.get('type') == 'UserTiming'
        ])
    return result


@pytest.fixture
def profile_with_unused_strings():
    profile = empty_profile()
    profile.meta.marker_schema = [
        MarkerSchema(name='UserTiming', fields=[
            MarkerSchemaField(key='name', format='unique-string'),
            MarkerSchemaField(key='entryType', format='string'),
        ])
    ]
    profile.shared.string_array = [
        'main', 'unused', 'file.c', 'libc.so', 'example.com', 'memcpy',
        'Mark', 'mark-name', 'also-unused', 'source.js'
    ]
    profile.shared.sources = SourceTable()
    profile.shared.sources.add_row(uuid=None, filename=9)

    thread = RawThread()
    add_func(thread, 0, file_name=2)
    thread.resource_table.add_row(lib=None, name=3, host=4, type=1)
    thread.native_symbols.add_row(lib_index=0, address=0x10, name=5,
                                  function_size=None)
    add_marker(thread, 6, {'type': 'UserTiming', 'name': 7,
                           'entryType': 'mark'})
    profile.threads = [thread]
    return profile


def test_unreferenced_strings_are_dropped():
    profile = empty_profile()
    profile.shared.string_array = ['used', 'unused', 'also-used']
    thread = RawThread()
    add_func(thread, 0)
    add_marker(thread, 2)
    profile.threads = [thread]

    compacted = compute_compacted_profile(profile)
    new_profile = compacted.profile
    assert new_profile.shared.string_array == ['used', 'also-used']
    assert compacted.old_string_to_new_string_plus_one == [1, 0, 2]
    assert new_profile.threads[0].func_table.name == [0]
    assert new_profile.threads[0].markers.name == [1]


def test_referenced_strings_keep_their_content(profile_with_unused_strings):
    profile = profile_with_unused_strings
    compacted = compute_compacted_profile(profile)
    new_profile = compacted.profile

    assert resolve_strings(new_profile) == resolve_strings(profile)
    assert 'unused' not in new_profile.shared.string_array
    assert 'also-unused' not in new_profile.shared.string_array
    assert len(new_profile.shared.string_array) == 8
    sources = new_profile.shared.sources
    assert new_profile.shared.string_array[sources.filename[0]] == \
        'source.js'
    # Fields that aren't string indexes are left alone.
    assert new_profile.threads[0].markers.data[0]['entryType'] == 'mark'


def test_input_profile_is_not_modified(profile_with_unused_strings):
    profile = profile_with_unused_strings
    before = profile.json()
    compute_compacted_profile(profile)
    assert profile.json() == before


def test_compacting_is_idempotent(profile_with_unused_strings):
    once = compute_compacted_profile(profile_with_unused_strings)
    twice = compute_compacted_profile(once.profile)
    assert twice.profile.shared.string_array == \
        once.profile.shared.string_array
    assert twice.profile.json() == once.profile.json()
    assert all(i != 0 for i in twice.old_string_to_new_string_plus_one)


def test_screenshot_urls_are_kept():
    profile = empty_profile()
    profile.shared.string_array = ['CompositorScreenshot', 'x',
                                   'data:image/jpg;base64,AAAA']
    thread = RawThread()
    add_marker(thread, 0, {'type': 'CompositorScreenshot', 'url': 2,
                           'windowID': 'id'})
    profile.threads = [thread]

    new_profile = compute_compacted_profile(profile).profile
    data = new_profile.threads[0].markers.data[0]
    assert new_profile.shared.string_array[data['url']] == \
        'data:image/jpg;base64,AAAA'


def test_payloads_without_a_schema_are_left_alone():
    profile = empty_profile()
    profile.shared.string_array = ['a']
    thread = RawThread()
    add_func(thread, 0)
    # A string index field only known to a schema that isn't in the profile
    # is not gathered, so it can't be translated either: it is left alone.
    add_marker(thread, 0, {'type': 'Unknown', 'name': 3})
    profile.threads = [thread]
    new_profile = compute_compacted_profile(profile).profile
    assert new_profile.threads[0].markers.data[0] == {'type': 'Unknown',
                                                      'name': 3}

