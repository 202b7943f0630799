"""Converts Chrome tracing data into a profile.

Three inputs are understood: a list of trace events (the Chrome Trace Event
format), a single CPU profile object as written by the Node.js and DevTools
profilers, and an object with a `traceEvents` list as exported by
chrome://tracing.
"""
import asyncio
import base64
import functools
import io
import math
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime

from PIL import Image

from profcore import config
from profcore.configured_logger import logger
from profcore.constants import (
    COMPOSITOR_SCREENSHOT,
    INTERVAL,
    INTERVAL_END,
    INTERVAL_START,
    INSTANT,
)
from profcore.errors import ProfcoreError, ProfileFormatError
from profcore.global_data_collector import GlobalDataCollector
from profcore.profile_data import (
    assert_stack_ordering,
    get_time_range_for_thread,
)
from profcore.profile_schema import (
    Category,
    MarkerSchema,
    MarkerSchemaField,
    RawThread,
    ProfileSharedData,
    empty_profile,
)

# Chrome samples every 100-300us. We resample at a fixed rate.
CHROME_INTERVAL = 0.5

CHROME_PRODUCT = 'Chrome Trace'

_ACCEPTED_PHASES = {'B', 'E', 'b', 'n', 'e', 'i', 'I', 'R'}
_PROFILE_EVENT_NAMES = {'Profile', 'ProfileChunk', 'CpuProfile'}
_SYNTHETIC_JS_NAMES = {'<WASM UNNAMED>', '(unresolved function)'}
_TIMESTAMP_RE = re.compile(r'(\d{4})(\d{2})(\d{2})T(\d{2})(\d{2})(\d{2})')


def chrome_categories():
    return [
        Category(name='Other', color='grey', subcategories=['Other']),
        Category(name='Idle', color='transparent', subcategories=['Other']),
        Category(name='JavaScript', color='yellow', subcategories=['Other']),
        Category(name='GC / CC', color='orange', subcategories=['Other']),
        Category(name='Graphics', color='green', subcategories=['Other']),
        Category(name='Native', color='blue', subcategories=['Other']),
    ]


def event_dispatch_schema():
    return MarkerSchema(
        name='EventDispatch',
        chart_label='{marker.data.type2}',
        tooltip_label='{marker.data.type2} - EventDispatch',
        table_label='{marker.data.type2}',
        display=['marker-chart', 'marker-table', 'timeline-overview'],
        # Chrome calls this field `type`, which clashes with the payload type.
        fields=[MarkerSchemaField(key='type2', label='Event Type')],
    )


def event_with_detail_schema():
    # Used e.g. by clang -ftime-trace output, whose events carry file paths
    # or source locations in a free-text detail field.
    return MarkerSchema(
        name='EventWithDetail',
        chart_label='{marker.data.detail}',
        tooltip_label='{marker.name}: {marker.data.detail}',
        table_label='{marker.data.detail}',
        display=['marker-chart', 'marker-table'],
        fields=[MarkerSchemaField(key='detail', label='Details')],
    )


def _wrap_cpu_profile_in_event(cpu_profile):
    return {
        'name': 'CpuProfile',
        'args': {'data': {'cpuProfile': cpu_profile}},
        # These don't matter for a standalone CPU profile.
        'cat': 'other',
        'pid': 0,
        'tid': 0,
        'ts': 0,
        'ph': 'I',
    }


def _find_events(json_data):
    if not json_data:
        return None
    if isinstance(json_data, list):
        first_events = json_data[:5]
        if all(isinstance(e, dict) and 'ph' in e for e in first_events):
            return json_data
        return None
    if not isinstance(json_data, dict):
        return None
    if all(key in json_data
           for key in ('samples', 'timeDeltas', 'startTime', 'endTime')):
        return [_wrap_cpu_profile_in_event(json_data)]
    if isinstance(json_data.get('traceEvents'), list):
        return json_data['traceEvents']
    return None


def attempt_to_convert_chrome_profile(json_data, profile_url=None):
    """Returns None if `json_data` isn't Chrome tracing data, otherwise a
    coroutine producing the converted Profile."""
    events = _find_events(json_data)
    if events is None:
        return None

    events_by_name = {}
    for event in events:
        if not isinstance(event, dict) or not isinstance(event.get('name'),
                                                         str):
            raise ProfileFormatError(
                'A tracing event in the chrome profile did not follow the '
                'expected form.')
        events_by_name.setdefault(event['name'], []).append(event)

    return ChromeTraceProcessor(events_by_name, profile_url).process()


def _is_finite_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool) \
        and math.isfinite(value)


def _decode_image_size(snapshot):
    try:
        with Image.open(io.BytesIO(base64.b64decode(snapshot))) as image:
            return image.size
    except (OSError, ValueError) as e:
        logger.warning('Could not decode a screenshot: %s', e)
        return None


class ScreenshotSizes(object):
    """Decodes screenshots off the event loop, once per distinct image."""

    def __init__(self, executor):
        self._executor = executor
        self._pending = {}

    def size_of(self, snapshot):
        future = self._pending.get(snapshot)
        if future is None:
            loop = asyncio.get_running_loop()
            future = loop.run_in_executor(self._executor, _decode_image_size,
                                          snapshot)
            self._pending[snapshot] = future
        return future


@dataclass
class ThreadInfo:
    thread: RawThread
    collector: GlobalDataCollector
    pid: int
    process_sort_index: int
    thread_sort_index: int
    tie_breaker_index: int
    last_seen_time: float
    last_sampled_time: float = 0
    node_id_to_stack_id: dict = field(default_factory=lambda: {None: None})


class ChromeTraceProcessor(object):

    def __init__(self, events_by_name, profile_url=None):
        self._events_by_name = events_by_name
        self._profile_url = profile_url
        self._profile = empty_profile()
        self._profile.meta.categories = chrome_categories()
        self._profile.meta.product = CHROME_PRODUCT
        self._profile.meta.imported_from = CHROME_PRODUCT
        self._profile.meta.interval = CHROME_INTERVAL
        self._collector = GlobalDataCollector()
        self._string_table = self._collector.get_string_table()
        self._thread_infos = {}

    def _category_index(self, name):
        for i, category in enumerate(self._profile.meta.categories):
            if category.name == name:
                return i
        raise ProfcoreError('no "{}" category in the profile'.format(name))

    def _find_event(self, name, predicate):
        for event in self._events_by_name.get(name, []):
            if predicate(event):
                return event
        return None

    def _get_thread_info(self, event) -> ThreadInfo:
        # Chrome's tids are only unique within a process.
        pid = event.get('pid')
        tid = event.get('tid')
        pid_and_tid = '{}:{}'.format(pid, tid)
        thread_info = self._thread_infos.get(pid_and_tid)
        if thread_info is not None:
            return thread_info

        thread = RawThread(
            pid=str(pid),
            tid=pid_and_tid,
            # Anything but "default", so that empty threads get hidden.
            process_type='unknown',
            name='Chrome Thread',
        )

        def same_thread(e):
            return e.get('pid') == pid and e.get('tid') == tid

        def same_process(e):
            return e.get('pid') == pid

        thread_name_event = self._find_event('thread_name', same_thread)
        if thread_name_event is not None:
            thread.name = thread_name_event['args']['name']
            thread.is_main_thread = (
                thread.name.startswith('Cr') and thread.name.endswith('Main')
            ) or (bool(pid) and pid == tid)

        process_name_event = self._find_event('process_name', same_process)
        if process_name_event is not None:
            thread.process_name = process_name_event['args']['name']

        # For renderers the label is usually the title of the tab.
        process_labels_event = self._find_event('process_labels',
                                                same_process)
        if process_labels_event is not None:
            labels = process_labels_event['args']['labels']
            if thread.process_name:
                thread.process_name = '{} ({})'.format(thread.process_name,
                                                       labels)
            else:
                thread.process_name = 'Process {} ({})'.format(pid, labels)

        process_sort_index = 0
        process_sort_event = self._find_event('process_sort_index',
                                              same_process)
        if process_sort_event is not None:
            process_sort_index = process_sort_event['args']['sort_index']

        thread_sort_index = 0
        thread_sort_event = self._find_event('thread_sort_index', same_thread)
        if thread_sort_event is not None:
            thread_sort_index = thread_sort_event['args']['sort_index']
        elif thread_name_event is not None and \
                thread.name in ('CrBrowserMain', 'CrGpuMain'):
            # Main threads that don't always come with a sort index.
            thread_sort_index = -1

        self._profile.threads.append(thread)
        thread_info = ThreadInfo(
            thread=thread,
            collector=self._collector.for_thread(thread),
            pid=pid,
            process_sort_index=process_sort_index,
            thread_sort_index=thread_sort_index,
            tie_breaker_index=len(self._thread_infos),
            last_seen_time=(event.get('ts') or 0) / 1000,
        )
        self._thread_infos[pid_and_tid] = thread_info
        logger.debug('Created thread %s (%s)', pid_and_tid, thread.name)
        return thread_info

    async def process(self):
        profile = self._profile
        profile_events = list(self._events_by_name.get('Profile', []))
        profile_events.extend(self._events_by_name.get('CpuProfile', []))

        for profile_event in profile_events:
            thread_info = self._get_thread_info(profile_event)
            data = profile_event.get('args', {}).get('data', {})
            if profile_event['name'] == 'Profile':
                thread_info.last_seen_time = data.get('startTime', 0) / 1000
                chunks = [
                    e for e in self._events_by_name.get('ProfileChunk', [])
                    if e.get('id') == profile_event.get('id')
                    and e.get('pid') == profile_event.get('pid')
                ]
            else:
                # Profiling is assumed to start exactly at the profile start.
                cpu_profile = data['cpuProfile']
                profile.meta.profiling_start_time = \
                    cpu_profile['startTime'] / 1000
                profile.meta.profiling_end_time = cpu_profile['endTime'] / 1000
                thread_info.last_seen_time = profile.meta.profiling_start_time
                chunks = [profile_event]

            for chunk in chunks:
                self._process_profile_chunk(thread_info, chunk)

        for thread_info in self._thread_infos.values():
            self._check_frames(thread_info.thread)
            assert_stack_ordering(thread_info.thread.stack_table)

        await self._extract_screenshots(
            self._events_by_name.get('Screenshot', []))
        self._extract_markers()
        self._resolve_profiling_bounds()
        if self._profile_url:
            self._apply_profile_url_start_time(self._profile_url)
        self._sort_threads()

        collected = self._collector.finish()
        profile.libs = collected.libs
        profile.shared = ProfileSharedData(
            string_array=collected.shared.string_array,
            sources=collected.shared.sources,
        )
        return profile

    def _process_profile_chunk(self, thread_info, chunk):
        data = chunk.get('args', {}).get('data')
        if not data or not data.get('cpuProfile'):
            # Probably a FallbackEndEvent.
            return
        cpu_profile = data['cpuProfile']
        if chunk['name'] == 'ProfileChunk':
            time_deltas = data.get('timeDeltas')
        else:
            time_deltas = cpu_profile.get('timeDeltas')
        # Nodes are interned even when the chunk has no samples, later
        # chunks can refer to them.
        nodes = cpu_profile.get('nodes')
        if nodes:
            self._process_nodes(thread_info, nodes)
        if time_deltas is None:
            return

        # This is a lossy downsample: a sample is only emitted once enough
        # time has passed since the previous one.
        samples_table = thread_info.thread.samples
        interval = self._profile.meta.interval
        emitted = 0
        for node_id, time_delta in zip(cpu_profile.get('samples', []),
                                       time_deltas):
            thread_info.last_seen_time += time_delta / 1000
            if thread_info.last_seen_time - thread_info.last_sampled_time \
                    < interval:
                continue
            thread_info.last_sampled_time = thread_info.last_seen_time
            stack_index = thread_info.node_id_to_stack_id.get(node_id)
            if stack_index is None:
                raise ProfileFormatError(
                    'Could not find the stack information for a sample when '
                    'decoding a Chrome profile.')
            samples_table.add_row(stack=stack_index,
                                  time=thread_info.last_sampled_time,
                                  event_delay=None)
            emitted += 1
        logger.debug('Emitted %d samples for thread %s', emitted,
                     thread_info.thread.tid)

    def _function_info(self, function_name, has_url_or_line_number):
        """Returns (category, is_js, relevant_for_js)."""
        if function_name == '(idle)':
            return self._category_index('Idle'), False, False
        if function_name in ('(root)', '(program)'):
            return self._category_index('Other'), False, False
        if function_name == '(garbage collector)':
            return self._category_index('GC / CC'), False, False
        if not has_url_or_line_number and \
                function_name not in _SYNTHETIC_JS_NAMES:
            return self._category_index('Native'), False, True
        return self._category_index('JavaScript'), True, False

    def _process_nodes(self, thread_info, nodes):
        collector = thread_info.collector
        frame_table = collector.frame_table
        stack_table = collector.stack_table
        node_id_to_stack_id = thread_info.node_id_to_stack_id
        parent_map = {}

        for node in nodes:
            node_id = node['id']
            if 'parent' in node:
                parent = node['parent']
            else:
                parent = parent_map.get(node_id)
            for child in node.get('children', []):
                parent_map[child] = node_id

            call_frame = node.get('callFrame', {})
            # "No data" is -1 or missing depending on the Chrome version.
            url = call_frame.get('url') or None
            line_number = call_frame.get('lineNumber')
            column_number = call_frame.get('columnNumber')
            if line_number == -1:
                line_number = None
            if column_number == -1:
                column_number = None
            # Chrome is 0-based, profiles are 1-based.
            if line_number is not None:
                line_number += 1
            if column_number is not None:
                column_number += 1

            function_name = call_frame.get('functionName', '')
            category, is_js, relevant_for_js = self._function_info(
                function_name, url is not None or line_number is not None)
            func_index = collector.index_for_func(
                name=self._string_table.index_for_string(
                    function_name or '(anonymous)'),
                is_js=is_js,
                relevant_for_js=relevant_for_js,
                resource=collector.index_for_uri_resource(url or '<unknown>')
                if is_js else -1,
                source=collector.index_for_source(None, url)
                if is_js and url else None,
                line_number=line_number,
                column_number=column_number,
            )

            if parent not in node_id_to_stack_id:
                raise ProfileFormatError(
                    'Unable to find the prefix stack index from a node index.')
            prefix_stack_index = node_id_to_stack_id[parent]

            # Node ids start at 1, frame indexes at 0.
            _set_frame(frame_table, node_id - 1,
                       address=-1,
                       inline_depth=0,
                       category=category,
                       subcategory=0,
                       func=func_index,
                       native_symbol=None,
                       inner_window_id=0,
                       line=line_number,
                       column=column_number)
            node_id_to_stack_id[node_id] = stack_table.add_row(
                frame=node_id - 1, prefix=prefix_stack_index)

    def _check_frames(self, thread):
        if None in thread.frame_table.func:
            raise ProfileFormatError(
                'The node ids of thread {} are not contiguous.'.format(
                    thread.tid))

    async def _extract_screenshots(self, screenshots):
        if not screenshots:
            return
        thread = self._get_thread_info(screenshots[0]).thread
        graphics_index = self._category_index('Graphics')

        with ThreadPoolExecutor(max_workers=config.SCREENSHOT_WORKERS) \
                as executor:
            decoder = ScreenshotSizes(executor)
            sizes = await asyncio.gather(*[
                decoder.size_of(s['args']['snapshot']) for s in screenshots
            ])

        for screenshot, size in zip(screenshots, sizes):
            if size is None:
                continue
            width, height = size
            url = 'data:image/jpg;base64,' + screenshot['args']['snapshot']
            thread.markers.add_instant_marker(
                self._string_table,
                COMPOSITOR_SCREENSHOT,
                screenshot['ts'] / 1000,
                graphics_index,
                {
                    'type': COMPOSITOR_SCREENSHOT,
                    'url': self._string_table.index_for_string(url),
                    'windowID': 'id',
                    'windowWidth': width,
                    'windowHeight': height,
                },
            )

    def _extract_markers(self):
        categories = self._profile.meta.categories
        other_category = self._category_index('Other')
        category_name_to_index = {c.name: i for i, c in enumerate(categories)}

        def category_index_for(name):
            index = category_name_to_index.get(name)
            if index is None:
                index = len(categories)
                categories.append(Category(name=name, color='grey',
                                           subcategories=['Other']))
                category_name_to_index[name] = index
            return index

        marker_schema = self._profile.meta.marker_schema
        marker_schema[:] = [event_dispatch_schema()]
        has_detail_schema = False
        # Begin events keep their detail here until the matching end event.
        begin_event_detail = {}

        for name, events in self._events_by_name.items():
            if name in _PROFILE_EVENT_NAMES:
                # Already converted into samples.
                continue

            for event in events:
                if not _is_finite_number(event.get('ts')):
                    continue
                phase = event.get('ph')
                if not (phase in _ACCEPTED_PHASES or
                        (phase == 'X' and _is_finite_number(event.get('dur')))):
                    continue

                time = event['ts'] / 1000
                markers = self._get_thread_info(event).thread.markers

                if phase in ('b', 'e') and 'id' in event:
                    detail_key = '{}:{}:{}:{}'.format(
                        event.get('pid'), event.get('tid'), event['id'], name)
                else:
                    detail_key = '{}:{}:{}'.format(event.get('pid'),
                                                   event.get('tid'), name)

                arg_data = None
                args = event.get('args')
                if isinstance(args, dict):
                    if args.get('data'):
                        arg_data = dict(args['data'])
                    elif isinstance(args.get('detail'), str):
                        arg_data = {'detail': args['detail']}

                if phase in ('E', 'e') and arg_data is None:
                    detail = begin_event_detail.get(detail_key)
                    if detail:
                        arg_data = {'detail': detail}

                data = None
                if arg_data is not None:
                    if 'type' in arg_data:
                        arg_data['type2'] = arg_data['type']
                    if 'category' in arg_data:
                        arg_data['category2'] = arg_data['category']
                    detail = arg_data.get('detail')
                    if detail and not has_detail_schema:
                        marker_schema.append(event_with_detail_schema())
                        has_detail_schema = True
                    data = dict(arg_data,
                                type='EventWithDetail' if detail else name)

                if event.get('cat'):
                    category = category_index_for(event['cat'])
                else:
                    category = other_category

                if phase == 'X':
                    start_time, end_time = time, time + event['dur'] / 1000
                    marker_phase = INTERVAL
                elif phase in ('B', 'b'):
                    start_time, end_time = time, None
                    marker_phase = INTERVAL_START
                    if arg_data and arg_data.get('detail'):
                        begin_event_detail[detail_key] = arg_data['detail']
                elif phase in ('E', 'e'):
                    start_time, end_time = None, time
                    marker_phase = INTERVAL_END
                    begin_event_detail.pop(detail_key, None)
                else:
                    start_time, end_time = time, None
                    marker_phase = INSTANT

                markers.add_row(
                    name=self._string_table.index_for_string(name),
                    start_time=start_time,
                    end_time=end_time,
                    phase=marker_phase,
                    category=category,
                    data=data,
                )

    def _resolve_profiling_bounds(self):
        meta = self._profile.meta
        if meta.profiling_start_time is not None or \
                meta.profiling_end_time is not None:
            return
        tracing_started = self._events_by_name.get('TracingStartedInBrowser')
        if not tracing_started or \
                not _is_finite_number(tracing_started[0].get('ts')):
            return
        profiling_end_time = max(
            (get_time_range_for_thread(t, meta.interval).end
             for t in self._profile.threads),
            default=-math.inf)
        meta.profiling_start_time = tracing_started[0]['ts'] / 1000
        if math.isfinite(profiling_end_time):
            meta.profiling_end_time = profiling_end_time

    def _apply_profile_url_start_time(self, profile_url):
        # DevTools names saved profiles with a local timestamp. It is the
        # save time rather than the start time, but it's the best we have.
        matches = list(_TIMESTAMP_RE.finditer(profile_url))
        if not matches:
            return
        year, month, day, hour, minute, second = map(int,
                                                      matches[-1].groups())
        try:
            saved_at = datetime(year, month, day, hour, minute, second)
        except ValueError:
            logger.warning('Ignoring invalid timestamp in %s', profile_url)
            return
        meta = self._profile.meta
        meta.start_time = saved_at.timestamp() * 1000 - \
            (meta.profiling_start_time or 0)

    def _sort_threads(self):
        info_by_thread = {id(info.thread): info
                          for info in self._thread_infos.values()}

        def compare(thread_a, thread_b):
            a = info_by_thread[id(thread_a)]
            b = info_by_thread[id(thread_b)]
            if a.pid == b.pid:
                if a.thread_sort_index != b.thread_sort_index:
                    return a.thread_sort_index - b.thread_sort_index
            elif a.process_sort_index != b.process_sort_index:
                return a.process_sort_index - b.process_sort_index
            return a.tie_breaker_index - b.tie_breaker_index

        self._profile.threads.sort(key=functools.cmp_to_key(compare))


def _set_frame(frame_table, frame_index, **values):
    """Writes a frame at a fixed index, growing the table as needed. Rows
    that are skipped over keep a func of None until they get written."""
    while frame_table.length <= frame_index:
        frame_table.add_row(address=-1, inline_depth=0, category=None,
                            subcategory=None, func=None, native_symbol=None,
                            inner_window_id=0, line=None, column=None)
    for name, value in values.items():
        getattr(frame_table, name)[frame_index] = value
