"""Removes the strings that nothing in a profile refers to anymore, e.g. after
threads were dropped while sanitizing a profile."""
from dataclasses import dataclass

from profcore.errors import TranslationError
from profcore.marker_schema import MarkerStringFields
from profcore.profile_schema import Profile, ProfileSharedData


@dataclass
class CompactedProfile:
    profile: Profile
    # For each old string index, the new index plus one, or 0 if the string
    # was dropped.
    old_string_to_new_string_plus_one: list[int]


def _string_columns(thread):
    """Yields (table, column name) for every string-index column of a thread
    except the marker payloads."""
    yield thread.markers, 'name'
    yield thread.func_table, 'name'
    yield thread.func_table, 'file_name'
    yield thread.resource_table, 'name'
    yield thread.resource_table, 'host'
    yield thread.native_symbols, 'name'


def _gather_referenced_strings(profile, marker_string_fields):
    referenced = bytearray(len(profile.shared.string_array))

    def mark(index):
        if index is not None:
            referenced[index] = 1

    for thread in profile.threads:
        for table, column in _string_columns(thread):
            for index in getattr(table, column):
                mark(index)
        for data in thread.markers.data:
            for index in marker_string_fields.string_indexes(data):
                mark(index)
    if profile.shared.sources is not None:
        for index in profile.shared.sources.filename:
            mark(index)
    return referenced


def compute_compacted_profile(profile: Profile) -> CompactedProfile:
    """Returns a copy of the profile whose string array only has the strings
    referenced by its threads and sources. The input profile is not
    modified."""
    marker_string_fields = MarkerStringFields(profile.meta.marker_schema)
    referenced = _gather_referenced_strings(profile, marker_string_fields)

    old_string_array = profile.shared.string_array
    new_string_array = []
    old_string_to_new_string_plus_one = [0] * len(old_string_array)
    for old_index, string in enumerate(old_string_array):
        if referenced[old_index]:
            new_string_array.append(string)
            old_string_to_new_string_plus_one[old_index] = \
                len(new_string_array)

    def translate(old_index):
        if old_index is None:
            return None
        new_index_plus_one = old_string_to_new_string_plus_one[old_index]
        if new_index_plus_one == 0:
            # Everything rewritten here must have been gathered above.
            raise TranslationError('string', old_index)
        return new_index_plus_one - 1

    new_threads = []
    for thread in profile.threads:
        new_thread = thread.copy()
        for attribute in ('markers', 'func_table', 'resource_table',
                          'native_symbols'):
            setattr(new_thread, attribute, getattr(thread, attribute).clone())
        for table, column in _string_columns(new_thread):
            setattr(table, column,
                    [translate(index) for index in getattr(table, column)])
        new_thread.markers.data = [
            marker_string_fields.remap(data, translate)
            for data in new_thread.markers.data
        ]
        new_threads.append(new_thread)

    new_sources = None
    if profile.shared.sources is not None:
        new_sources = profile.shared.sources.clone()
        new_sources.filename = [translate(i) for i in new_sources.filename]

    new_profile = Profile(
        meta=profile.meta,
        libs=profile.libs,
        shared=ProfileSharedData(string_array=new_string_array,
                                 sources=new_sources),
        threads=new_threads,
    )
    return CompactedProfile(
        profile=new_profile,
        old_string_to_new_string_plus_one=old_string_to_new_string_plus_one)
