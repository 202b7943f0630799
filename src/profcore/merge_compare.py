"""Merging of several profiles into one for the comparison view, and merging of
several threads of one profile into a single thread.

Both operations produce new tables and never modify the inputs.
"""
import dataclasses
import math
from dataclasses import dataclass, field

from profcore.configured_logger import logger
from profcore.constants import COMPOSITOR_SCREENSHOT
from profcore.errors import ProfcoreError, ThreadSelectionError, \
    TranslationError
from profcore.marker_data import (
    adjust_marker_timestamps,
    correlate_ipc_markers,
    derive_markers_from_raw_marker_table,
    filter_raw_marker_table_to_range,
    marker_sort_time,
    sort_raw_marker_table,
)
from profcore.marker_schema import MarkerStringFields
from profcore.profile_data import (
    StartEndRange,
    adjust_sample_timestamps,
    filter_raw_thread_samples_to_range,
    get_time_range_for_thread,
    get_time_range_including_all_threads,
    update_raw_thread_stacks,
)
from profcore.profile_schema import (
    FrameTable,
    FuncTable,
    NativeSymbolTable,
    Profile,
    ProfileMeta,
    ProfileSharedData,
    RawMarkerTable,
    RawStackTable,
    RawThread,
    ResourceTable,
    SamplesTable,
    SourceTable,
    empty_profile,
)
from profcore.string_table import StringTable

COMPARISON_THREAD_NAME = 'Diff between 1 and 2'
MERGED_THREAD_NAME = 'Merged thread'

# These describe the recording of one profile and lose their meaning once the
# threads are time-shifted.
_UNCOPIED_META_FIELDS = {'profiling_start_time', 'profiling_end_time',
                         'extra'}
_MISSING = object()


@dataclass
class ProfileState:
    """What the user selected in one of the profiles being compared."""
    profile_name: str | None = None
    selected_threads: set[int] | None = None
    # Zoomed-in ranges, relative to the start of the profile. The last one
    # applies.
    committed_ranges: list[StartEndRange] = field(default_factory=list)
    # Per thread index, passed through unchanged.
    transforms: dict[int, list] = field(default_factory=dict)
    implementation: str = 'combined'


@dataclass
class MergedProfiles:
    profile: Profile
    transform_stacks: dict[int, list]
    implementation_filters: list[str]


def _translate(plus_one_map, index, what):
    """Looks up `index` in a translation map holding new indexes plus one,
    where 0 means "no translation"."""
    if index is None:
        return None
    new_index_plus_one = plus_one_map[index] \
        if 0 <= index < len(plus_one_map) else 0
    if new_index_plus_one == 0:
        raise TranslationError(what, index)
    return new_index_plus_one - 1


def merge_categories(categories_per_profile):
    """Returns (categories, translation maps). Categories are merged by name,
    the subcategories of the first category with a given name win."""
    new_categories = []
    new_category_index_by_name = {}
    translation_maps = []
    for categories in categories_per_profile:
        old_category_to_new_category_plus_one = []
        for category in categories or []:
            new_index = new_category_index_by_name.get(category.name)
            if new_index is None:
                new_index = len(new_categories)
                new_categories.append(category)
                new_category_index_by_name[category.name] = new_index
            old_category_to_new_category_plus_one.append(new_index + 1)
        translation_maps.append(old_category_to_new_category_plus_one)
    return new_categories, translation_maps


def merge_string_arrays(string_arrays_per_profile):
    new_string_array = []
    new_string_table = StringTable.with_backing_array(new_string_array)
    translation_maps = []
    for string_array in string_arrays_per_profile:
        translation_maps.append([
            new_string_table.index_for_string(s) + 1 for s in string_array
        ])
    return new_string_array, translation_maps


def merge_libs(libs_per_profile):
    new_libs = []
    new_lib_index_by_key = {}
    translation_maps = []
    for libs in libs_per_profile:
        old_lib_to_new_lib_plus_one = []
        for lib in libs:
            key = '{}#{}'.format(lib.name, lib.debug_name)
            new_index = new_lib_index_by_key.get(key)
            if new_index is None:
                new_index = len(new_libs)
                new_libs.append(lib)
                new_lib_index_by_key[key] = new_index
            old_lib_to_new_lib_plus_one.append(new_index + 1)
        translation_maps.append(old_lib_to_new_lib_plus_one)
    return new_libs, translation_maps


def merge_sources(sources_per_profile, translation_maps_for_strings):
    new_sources = SourceTable()
    new_source_index_by_key = {}
    translation_maps = []
    for sources, string_map in zip(sources_per_profile,
                                   translation_maps_for_strings):
        old_source_to_new_source_plus_one = []
        if sources is not None:
            for i in range(sources.length):
                uuid = sources.uuid[i]
                new_filename = _translate(string_map, sources.filename[i],
                                          'string')
                if uuid is not None:
                    key = uuid
                else:
                    key = 'null-uuid-{}'.format(new_filename)
                new_index = new_source_index_by_key.get(key)
                if new_index is None:
                    new_index = new_sources.add_row(uuid=uuid,
                                                    filename=new_filename)
                    new_source_index_by_key[key] = new_index
                old_source_to_new_source_plus_one.append(new_index + 1)
        translation_maps.append(old_source_to_new_source_plus_one)
    return new_sources, translation_maps


def _merge_meta(profiles) -> ProfileMeta:
    meta = empty_profile().meta
    first_meta = profiles[0].meta
    for meta_field in dataclasses.fields(ProfileMeta):
        name = meta_field.name
        if name in _UNCOPIED_META_FIELDS:
            continue
        value = getattr(first_meta, name)
        if all(getattr(p.meta, name) == value for p in profiles):
            setattr(meta, name, value)
    for key, value in first_meta.extra.items():
        if all(p.meta.extra.get(key, _MISSING) == value for p in profiles):
            meta.extra[key] = value

    # The marker schema and categories of the first profile are the base, even
    # if the profiles differ.
    meta.marker_schema = first_meta.marker_schema
    meta.categories = first_meta.categories
    meta.interval = min(p.meta.interval for p in profiles)

    # A single unsymbolicated profile makes the whole result unsymbolicated,
    # so that symbolication gets triggered.
    if all(p.meta.symbolicated is None for p in profiles):
        meta.symbolicated = None
    else:
        meta.symbolicated = all(p.meta.symbolicated for p in profiles)
    return meta


def _translate_thread_references(thread, maps, marker_string_fields):
    """Moves the string, category, lib and source references of a thread from
    the index space of its profile into the merged one."""
    strings = maps['strings']

    def string(index):
        return _translate(strings, index, 'string')

    def category(index):
        return _translate(maps['categories'], index, 'category')

    def lib(index):
        return _translate(maps['libs'], index, 'lib')

    new_thread = thread.copy()

    frame_table = thread.frame_table.clone()
    frame_table.category = [category(c) for c in frame_table.category]
    new_thread.frame_table = frame_table

    func_table = thread.func_table.clone()
    func_table.name = [string(s) for s in func_table.name]
    func_table.file_name = [string(s) for s in func_table.file_name]
    func_table.source = [_translate(maps['sources'], s, 'source')
                         for s in func_table.source]
    new_thread.func_table = func_table

    resource_table = thread.resource_table.clone()
    resource_table.name = [string(s) for s in resource_table.name]
    resource_table.host = [string(s) for s in resource_table.host]
    resource_table.lib = [lib(l) for l in resource_table.lib]
    new_thread.resource_table = resource_table

    native_symbols = thread.native_symbols.clone()
    native_symbols.name = [string(s) for s in native_symbols.name]
    native_symbols.lib_index = [lib(l) for l in native_symbols.lib_index]
    new_thread.native_symbols = native_symbols

    markers = thread.markers.clone()
    markers.name = [string(s) for s in markers.name]
    markers.category = [category(c) for c in markers.category]
    markers.data = [marker_string_fields.remap(d, string)
                    for d in markers.data]
    new_thread.markers = markers
    return new_thread


def get_thread_markers_and_screenshot_markers(threads, target_thread_index):
    """Returns the markers of the target thread, plus the CompositorScreenshot
    markers of all the other threads."""
    target_markers = threads[target_thread_index].markers.clone()
    for thread_index, thread in enumerate(threads):
        if thread_index == target_thread_index:
            continue
        markers = thread.markers
        for i in range(markers.length):
            data = markers.data[i]
            if not data or data.get('type') != COMPOSITOR_SCREENSHOT:
                continue
            row = {name: getattr(markers, name)[i]
                   for name in RawMarkerTable.columns}
            if target_markers.thread_id is not None:
                row['thread_id'] = markers.thread_id[i] \
                    if markers.thread_id is not None else thread.tid
            target_markers.add_row(**row)
    return target_markers


def _filter_raw_thread_to_range(thread, derived_marker_info, range_start,
                                range_end):
    new_thread = filter_raw_thread_samples_to_range(thread, range_start,
                                                    range_end)
    new_thread.markers = filter_raw_marker_table_to_range(
        thread.markers, derived_marker_info, range_start, range_end)
    return new_thread


def _selected_thread_index(profile_index, profile_state):
    selected = profile_state.selected_threads
    if selected is None:
        raise ThreadSelectionError(
            'No thread has been selected in profile {}'.format(profile_index))
    if len(selected) != 1:
        raise ThreadSelectionError(
            'Only one thread selection is currently supported for the '
            'comparison view.')
    return next(iter(selected))


def _first_time(thread):
    if thread.samples.length:
        return thread.samples.time[0]
    for start_time in thread.markers.start_time:
        if start_time is not None:
            return start_time
    return 0


def _align_thread_start(thread, interval):
    """Shifts all the times of a thread so that it starts at 0."""
    delta = -_first_time(thread)
    thread.samples = adjust_sample_timestamps(thread.samples, delta)
    thread.markers = adjust_marker_timestamps(thread.markers, delta)
    thread.register_time += delta
    thread.process_startup_time += delta
    if thread.process_shutdown_time is not None:
        thread.process_shutdown_time += delta
    if thread.unregister_time is not None:
        thread.unregister_time += delta

    # The profiles usually have different lengths. An explicit end lets the
    # empty part of the shorter one be drawn.
    if thread.process_shutdown_time is None and \
            thread.unregister_time is None:
        thread.unregister_time = get_time_range_for_thread(thread,
                                                           interval).end


def merge_profiles_for_diffing(profiles, profile_states) -> MergedProfiles:
    """Combines the selected thread of each profile into one profile.

    With exactly two profiles, a comparison thread is added at the end: its
    samples from the first profile have a negative weight and the ones from
    the second profile a positive weight, so that any call tree computed from
    it shows the difference between the two.
    """
    if len(profiles) != len(profile_states):
        raise ProfcoreError(
            'Passed lists do not have the same length. This should not '
            'happen.')
    if not profiles:
        raise ProfcoreError('There are no profiles to merge.')

    result = Profile(meta=_merge_meta(profiles))
    marker_string_fields = MarkerStringFields(result.meta.marker_schema)

    categories, category_maps = merge_categories(
        [p.meta.categories for p in profiles])
    string_array, string_maps = merge_string_arrays(
        [p.shared.string_array for p in profiles])
    libs, lib_maps = merge_libs([p.libs for p in profiles])
    sources, source_maps = merge_sources(
        [p.shared.sources for p in profiles], string_maps)
    result.meta.categories = categories
    result.libs = libs
    result.shared = ProfileSharedData(string_array=string_array,
                                      sources=sources)

    transform_stacks = {}
    implementation_filters = []

    for i, (profile, state) in enumerate(zip(profiles, profile_states)):
        selected_index = _selected_thread_index(i, state)
        transform_stacks[i] = list(state.transforms.get(selected_index, []))
        implementation_filters.append(state.implementation)

        thread = profile.threads[selected_index].copy()
        # Screenshots are kept even when they're not on the selected thread.
        thread.markers = get_thread_markers_and_screenshot_markers(
            profile.threads, selected_index)

        if state.committed_ranges:
            committed_range = state.committed_ranges[-1]
            zero_at = get_time_range_including_all_threads(profile).start
            # Markers can only be range-filtered once they are derived.
            derived_marker_info = derive_markers_from_raw_marker_table(
                thread.markers, profile.shared.string_array, thread.tid or 0,
                committed_range,
                correlate_ipc_markers(profile.threads, profile.shared))
            thread = _filter_raw_thread_to_range(
                thread, derived_marker_info,
                committed_range.start + zero_at,
                committed_range.end + zero_at)

        thread = _translate_thread_references(
            thread,
            {
                'strings': string_maps[i],
                'categories': category_maps[i],
                'libs': lib_maps[i],
                'sources': source_maps[i],
            },
            marker_string_fields)

        # Avoid collisions between the threads of different profiles.
        thread.pid = '{} from profile {}'.format(thread.pid, i + 1)
        thread.tid = '{} from profile {}'.format(thread.tid, i + 1)
        thread.is_main_thread = True
        thread.process_name = '{}: {}'.format(
            state.profile_name or 'Profile {}'.format(i + 1),
            thread.process_name or thread.name)

        _align_thread_start(thread, profile.meta.interval)
        result.threads.append(thread)
        logger.debug('Added thread %s of profile %d', selected_index, i + 1)

    # A comparison only makes sense between two profiles.
    if len(profiles) == 2:
        result.threads.append(get_comparison_thread([
            (result.threads[0],
             profiles[0].meta.interval / result.meta.interval),
            (result.threads[1],
             profiles[1].meta.interval / result.meta.interval),
        ]))

    result.meta.initial_visible_threads = list(range(len(result.threads)))
    return MergedProfiles(profile=result,
                          transform_stacks=transform_stacks,
                          implementation_filters=implementation_filters)


def combine_resource_tables(threads):
    # Resources are deduplicated by name and type only, the lib is not part
    # of the key.
    new_table = ResourceTable()
    new_index_by_key = {}
    translation_maps = []
    for thread in threads:
        table = thread.resource_table
        translation_map = {}
        for i in range(table.length):
            key = (table.name[i], table.type[i])
            new_index = new_index_by_key.get(key)
            if new_index is None:
                new_index = new_table.add_row(**table.row(i))
                new_index_by_key[key] = new_index
            translation_map[i] = new_index
        translation_maps.append(translation_map)
    return new_table, translation_maps


def combine_native_symbol_tables(threads):
    new_table = NativeSymbolTable()
    new_index_by_key = {}
    translation_maps = []
    for thread in threads:
        table = thread.native_symbols
        translation_map = {}
        for i in range(table.length):
            key = (table.name[i], table.address[i])
            new_index = new_index_by_key.get(key)
            if new_index is None:
                new_index = new_table.add_row(**table.row(i))
                new_index_by_key[key] = new_index
            translation_map[i] = new_index
        translation_maps.append(translation_map)
    return new_table, translation_maps


def combine_func_tables(threads, translation_maps_for_resources):
    new_table = FuncTable()
    new_index_by_key = {}
    translation_maps = []
    for thread, resource_map in zip(threads, translation_maps_for_resources):
        table = thread.func_table
        translation_map = {}
        for i in range(table.length):
            resource = table.resource[i]
            if resource is not None and resource >= 0:
                if resource not in resource_map:
                    raise TranslationError('resource', resource,
                                           'func {}'.format(i))
                resource = resource_map[resource]
            # Native funcs are unique by name within a resource, JS funcs
            # also need the line. Label funcs only have a name.
            key = (table.name[i], resource, table.line_number[i])
            new_index = new_index_by_key.get(key)
            if new_index is None:
                row = table.row(i)
                row['resource'] = resource
                new_index = new_table.add_row(**row)
                new_index_by_key[key] = new_index
            translation_map[i] = new_index
        translation_maps.append(translation_map)
    return new_table, translation_maps


def combine_frame_tables(threads, translation_maps_for_funcs,
                         translation_maps_for_native_symbols):
    # Frames are copied one to one, deduplicating them isn't needed to get a
    # merged call tree.
    new_table = FrameTable()
    translation_maps = []
    for thread, func_map, native_symbol_map in zip(
            threads, translation_maps_for_funcs,
            translation_maps_for_native_symbols):
        table = thread.frame_table
        translation_map = {}
        for i in range(table.length):
            row = table.row(i)
            if row['func'] not in func_map:
                raise TranslationError('func', row['func'],
                                       'frame {}'.format(i))
            row['func'] = func_map[row['func']]
            native_symbol = row['native_symbol']
            if native_symbol is not None:
                if native_symbol not in native_symbol_map:
                    raise TranslationError('native symbol', native_symbol,
                                           'frame {}'.format(i))
                row['native_symbol'] = native_symbol_map[native_symbol]
            translation_map[i] = new_table.add_row(**row)
        translation_maps.append(translation_map)
    return new_table, translation_maps


def combine_stack_tables(threads, translation_maps_for_frames):
    new_table = RawStackTable()
    translation_maps = []
    for thread, frame_map in zip(threads, translation_maps_for_frames):
        table = thread.stack_table
        translation_map = {}
        for i in range(table.length):
            frame = table.frame[i]
            if frame not in frame_map:
                raise TranslationError('frame', frame, 'stack {}'.format(i))
            prefix = table.prefix[i]
            if prefix is not None:
                if prefix not in translation_map:
                    raise TranslationError('prefix', prefix,
                                           'stack {}'.format(i))
                prefix = translation_map[prefix]
            translation_map[i] = new_table.add_row(frame=frame_map[frame],
                                                   prefix=prefix)
        translation_maps.append(translation_map)
    return new_table, translation_maps


def _combine_thread_tables(threads):
    """Returns a thread holding the combined tables of `threads` and the stack
    translation map of each input thread."""
    resource_table, resource_maps = combine_resource_tables(threads)
    native_symbols, native_symbol_maps = combine_native_symbol_tables(threads)
    func_table, func_maps = combine_func_tables(threads, resource_maps)
    frame_table, frame_maps = combine_frame_tables(threads, func_maps,
                                                   native_symbol_maps)
    stack_table, stack_maps = combine_stack_tables(threads, frame_maps)
    combined = RawThread(
        resource_table=resource_table,
        native_symbols=native_symbols,
        func_table=func_table,
        frame_table=frame_table,
        stack_table=stack_table,
    )
    return combined, stack_maps


def _stack_translator(stack_map, owner):
    def convert_stack(stack):
        if stack is None:
            return None
        if stack not in stack_map:
            raise TranslationError('stack', stack, owner)
        return stack_map[stack]
    return convert_stack


def combine_samples_diffing(threads_and_multipliers):
    """Interleaves the samples of two threads chronologically. The first
    thread is the base: its samples get a negative weight."""
    (thread1, multiplier1), (thread2, multiplier2) = threads_and_multipliers
    samples1 = thread1.samples
    samples2 = thread2.samples
    new_samples = SamplesTable(weight=[], thread_id=[],
                               weight_type=samples1.weight_type)

    def sample_weight(samples, index):
        if samples.weight is None or samples.weight[index] is None:
            return 1
        return samples.weight[index]

    i = j = 0
    while i < samples1.length or j < samples2.length:
        if i < samples1.length and (j >= samples2.length or
                                    samples1.time[i] < samples2.time[j]):
            new_samples.add_row(
                stack=samples1.stack[i],
                time=samples1.time[i],
                weight=-multiplier1 * sample_weight(samples1, i),
                # Interleaved event delays don't mean anything.
                event_delay=None,
                thread_id=thread1.tid)
            i += 1
        else:
            new_samples.add_row(
                stack=samples2.stack[j],
                time=samples2.time[j],
                weight=multiplier2 * sample_weight(samples2, j),
                event_delay=None,
                thread_id=thread2.tid)
            j += 1
    return new_samples


def get_comparison_thread(threads_and_multipliers) -> RawThread:
    """`threads_and_multipliers` is [(thread, weight multiplier)] for the two
    threads to compare. The multiplier corrects for different sampling
    intervals."""
    threads = [thread for thread, _ in threads_and_multipliers]
    combined, stack_maps = _combine_thread_tables(threads)

    translated = [
        (update_raw_thread_stacks(
            thread, _stack_translator(stack_map, 'a sample')), multiplier)
        for (thread, multiplier), stack_map in zip(threads_and_multipliers,
                                                  stack_maps)
    ]
    combined.samples = combine_samples_diffing(translated)

    thread1, thread2 = threads
    combined.process_type = 'comparison'
    combined.process_startup_time = min(thread1.process_startup_time,
                                        thread2.process_startup_time)
    combined.process_shutdown_time = max(thread1.process_shutdown_time or 0,
                                         thread2.process_shutdown_time or 0) \
        or None
    combined.register_time = min(thread1.register_time, thread2.register_time)
    combined.unregister_time = max(thread1.unregister_time or 0,
                                   thread2.unregister_time or 0) or None
    combined.name = COMPARISON_THREAD_NAME
    combined.pid = COMPARISON_THREAD_NAME
    combined.tid = COMPARISON_THREAD_NAME
    combined.is_main_thread = True
    combined.markers = RawMarkerTable()
    return combined


def _k_way_merge(times_per_thread):
    """Yields (thread index, row index) in chronological order. On equal
    times the thread that comes first wins."""
    next_index = [0] * len(times_per_thread)
    while True:
        earliest_thread = None
        earliest_time = math.inf
        for thread_index, times in enumerate(times_per_thread):
            row = next_index[thread_index]
            if row < len(times) and (earliest_thread is None or
                                     times[row] < earliest_time):
                earliest_thread = thread_index
                earliest_time = times[row]
        if earliest_thread is None:
            return
        yield earliest_thread, next_index[earliest_thread]
        next_index[earliest_thread] += 1


def combine_samples_for_merging(threads) -> SamplesTable:
    """Merges the samples of several threads in chronological order. All of
    them count positively."""
    has_weight = any(t.samples.weight is not None for t in threads)
    new_samples = SamplesTable(thread_id=[])
    if has_weight:
        new_samples.weight = []
        new_samples.weight_type = next(t.samples.weight_type for t in threads
                                       if t.samples.weight is not None)
    for thread_index, i in _k_way_merge([t.samples.time for t in threads]):
        thread = threads[thread_index]
        samples = thread.samples
        weight = None
        if has_weight:
            weight = samples.weight[i] if samples.weight is not None else 1
        new_samples.add_row(
            stack=samples.stack[i],
            time=samples.time[i],
            weight=weight,
            # Event delays of different threads can't be combined.
            event_delay=None,
            thread_id=samples.thread_id[i]
            if samples.thread_id is not None else thread.tid)
    return new_samples


def merge_markers(threads) -> RawMarkerTable:
    """Merges the markers of several threads, ordered by their start time (or
    their end time when there's no start)."""
    sorted_markers = [sort_raw_marker_table(t.markers) for t in threads]
    times_per_thread = [
        [marker_sort_time(markers, i) for i in range(markers.length)]
        for markers in sorted_markers
    ]
    new_markers = RawMarkerTable(thread_id=[])
    for thread_index, i in _k_way_merge(times_per_thread):
        markers = sorted_markers[thread_index]
        row = {name: getattr(markers, name)[i]
               for name in RawMarkerTable.columns}
        row['thread_id'] = markers.thread_id[i] \
            if markers.thread_id is not None else threads[thread_index].tid
        new_markers.add_row(**row)
    return new_markers


def merge_threads(threads) -> RawThread:
    """Merges threads of the same profile into one thread.

    The threads must share the string table, libs and categories of their
    profile, only the per-thread tables are combined.
    """
    combined, stack_maps = _combine_thread_tables(threads)
    translated = [
        update_raw_thread_stacks(
            thread, _stack_translator(stack_map, 'a sample or marker'))
        for thread, stack_map in zip(threads, stack_maps)
    ]
    combined.samples = combine_samples_for_merging(translated)
    combined.markers = merge_markers(translated)

    process_startup_time = math.inf
    process_shutdown_time = -math.inf
    register_time = math.inf
    unregister_time = -math.inf
    for thread in threads:
        process_startup_time = min(thread.process_startup_time,
                                   process_startup_time)
        # A thread that is still alive keeps the merged thread alive.
        process_shutdown_time = max(thread.process_shutdown_time or math.inf,
                                    process_shutdown_time)
        register_time = min(thread.register_time, register_time)
        unregister_time = max(thread.unregister_time or math.inf,
                              unregister_time)

    combined.process_type = 'merged'
    combined.process_startup_time = process_startup_time
    combined.process_shutdown_time = None \
        if process_shutdown_time == math.inf else process_shutdown_time
    combined.register_time = register_time
    combined.unregister_time = None \
        if unregister_time == math.inf else unregister_time
    combined.name = MERGED_THREAD_NAME
    combined.pid = MERGED_THREAD_NAME
    combined.tid = MERGED_THREAD_NAME
    combined.is_main_thread = True
    return combined
