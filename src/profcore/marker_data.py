from dataclasses import dataclass, field
from typing import Any

from profcore.configured_logger import logger
from profcore.constants import (
    COMPOSITOR_SCREENSHOT,
    INSTANT,
    INTERVAL,
    INTERVAL_END,
    INTERVAL_START,
)
from profcore.errors import ProfileFormatError
from profcore.profile_schema import RawMarkerTable
from profcore.string_table import StringTable


@dataclass
class Marker:
    start: float
    end: float | None
    name: str
    category: int
    data: dict | None = None
    thread_id: Any = None
    incomplete: bool = False


@dataclass
class DerivedMarkerInfo:
    markers: list[Marker] = field(default_factory=list)
    # For each derived marker, the raw markers it was built from.
    marker_index_to_raw_marker_indexes: list[list[int]] = field(
        default_factory=list)

    def add(self, raw_indexes, marker):
        self.marker_index_to_raw_marker_indexes.append(raw_indexes)
        self.markers.append(marker)


def adjust_marker_timestamps(markers: RawMarkerTable, delta: float):
    def adjust(time):
        return None if time is None else time + delta

    def adjust_data(data):
        if not data:
            return data
        new_data = dict(data)
        for key in ('startTime', 'endTime'):
            if isinstance(new_data.get(key), (int, float)):
                new_data[key] += delta
        cause = new_data.get('cause')
        if isinstance(cause, dict) and cause.get('time') is not None:
            new_data['cause'] = dict(cause, time=cause['time'] + delta)
        return new_data

    new_markers = markers.clone()
    new_markers.start_time = [adjust(t) for t in markers.start_time]
    new_markers.end_time = [adjust(t) for t in markers.end_time]
    new_markers.data = [adjust_data(d) for d in markers.data]
    return new_markers


def marker_sort_time(markers: RawMarkerTable, index: int) -> float:
    start_time = markers.start_time[index]
    if start_time is not None:
        return start_time
    return markers.end_time[index]


def sort_raw_marker_table(markers: RawMarkerTable) -> RawMarkerTable:
    """Returns a copy of the table ordered by start time, using the end time
    for markers that only have one. The sort is stable."""
    order = sorted(range(markers.length),
                   key=lambda i: marker_sort_time(markers, i))
    return select_raw_markers(markers, order)


def select_raw_markers(markers: RawMarkerTable, indexes) -> RawMarkerTable:
    new_markers = markers.clone()
    for name in new_markers.present_columns():
        column = getattr(markers, name)
        setattr(new_markers, name, [column[i] for i in indexes])
    new_markers.length = len(indexes)
    return new_markers


class IPCMarkerCorrelations(object):
    def __init__(self):
        self._correlations = {}

    def set(self, tid, index, data):
        self._correlations.setdefault(tid, {})[index] = data

    def get(self, tid, index):
        return self._correlations.get(tid, {}).get(index)


def _ipc_phase_index(data):
    """Position of an IPC marker among the 5 markers of one message."""
    phase = data.get('phase')
    if data.get('direction') == 'sending':
        if phase in (None, 'endpoint'):
            return 0
        if phase == 'transferStart':
            return 1
        if phase == 'transferEnd':
            return 2
    else:
        if phase == 'transferEnd':
            return 3
        if phase in (None, 'endpoint'):
            return 4
    raise ProfileFormatError('unexpected IPC phase {} for direction {}'.format(
        phase, data.get('direction')))


def correlate_ipc_markers(threads, shared) -> IPCMarkerCorrelations:
    """Pairs the sender and recipient sides of IPC messages so that both
    sides can show the full duration of the message."""
    correlations = IPCMarkerCorrelations()
    if not StringTable(shared.string_array).has_string('IPC'):
        return correlations

    def message_id(thread, data):
        if data.get('direction') == 'sending':
            pids = '{},{}'.format(thread.pid, data.get('otherPid'))
        else:
            pids = '{},{}'.format(data.get('otherPid'), thread.pid)
        return '{},{},{}'.format(pids, data.get('messageSeqno'),
                                 data.get('messageType'))

    markers_by_key = {}
    thread_names = {}
    for thread in threads:
        if not isinstance(thread.tid, int):
            continue
        thread_names[thread.tid] = thread.name
        for index in range(thread.markers.length):
            data = thread.markers.data[index]
            if not data or data.get('type') != 'IPC':
                continue
            key = message_id(thread, data)
            message_markers = markers_by_key.setdefault(key, [None] * 5)
            phase_index = _ipc_phase_index(data)
            if message_markers[phase_index] is None:
                message_markers[phase_index] = (thread.tid, index, data)
            else:
                logger.warning('Duplicate IPC marker found for key %s', key)

    def format_thread_name(tid):
        if tid is not None and tid in thread_names:
            return '{} (Thread ID: {})'.format(thread_names[tid], tid)
        return None

    def start_time_of(entry):
        return entry[2].get('startTime') if entry is not None else None

    for message_markers in markers_by_key.values():
        start_endpoint = message_markers[0]
        end_endpoint = message_markers[4]
        send_tid = start_endpoint[0] if start_endpoint else None
        recv_tid = end_endpoint[0] if end_endpoint else None
        shared_data = {
            'startTime': start_time_of(start_endpoint),
            'sendStartTime': start_time_of(message_markers[1]),
            'sendEndTime': start_time_of(message_markers[2]),
            'recvEndTime': start_time_of(message_markers[3]),
            'endTime': start_time_of(end_endpoint),
            'sendTid': send_tid,
            'recvTid': recv_tid,
            'sendThreadName': format_thread_name(send_tid),
            'recvThreadName': format_thread_name(recv_tid),
        }

        added_thread_ids = set()
        for endpoint in (start_endpoint, end_endpoint):
            if endpoint is not None:
                added_thread_ids.add(endpoint[0])
                correlations.set(endpoint[0], endpoint[1], shared_data)

        # With both endpoints present, the transfer markers stay on their
        # I/O threads.
        if start_endpoint is None or end_endpoint is None:
            for entry in message_markers[1:4]:
                if entry is not None and entry[0] not in added_thread_ids:
                    correlations.set(entry[0], entry[1], shared_data)
                    added_thread_ids.add(entry[0])
    return correlations


def _merge_interval_data(start_data, end_data):
    if start_data is None:
        return end_data
    if end_data is None:
        return start_data
    return {**start_data, **end_data}


def derive_markers_from_raw_marker_table(raw_markers: RawMarkerTable,
                                         string_array, thread_id,
                                         thread_range,
                                         ipc_correlations) -> DerivedMarkerInfo:
    """Turns the raw marker table into display markers.

    Interval start and end markers are paired by name, innermost first.
    A start without an end lasts until the end of the thread range, an end
    without a start begins at the start of the thread range.
    """
    info = DerivedMarkerInfo()
    open_interval_markers = {}
    open_network_markers = {}
    previous_screenshot_markers = {}

    def thread_id_of(index):
        if raw_markers.thread_id is not None:
            return raw_markers.thread_id[index]
        return None

    for index in range(raw_markers.length):
        name_index = raw_markers.name[index]
        name = string_array[name_index]
        start_time = raw_markers.start_time[index]
        end_time = raw_markers.end_time[index]
        phase = raw_markers.phase[index]
        data = raw_markers.data[index]
        category = raw_markers.category[index]
        data_type = data.get('type') if data else None

        if data_type == 'Network':
            if data.get('status') == 'STATUS_START':
                open_network_markers[data.get('id')] = index
                continue
            start_index = open_network_markers.pop(data.get('id'), None)
            if start_index is not None:
                start_data = raw_markers.data[start_index]
                start = raw_markers.start_time[start_index]
                info.add([start_index, index], Marker(
                    start=start, end=end_time, name=name, category=category,
                    thread_id=thread_id_of(index),
                    data={**data, 'startTime': start,
                          'fetchStart': start_time,
                          'cause': start_data.get('cause') or
                          data.get('cause')}))
            else:
                start = min(thread_range.start, start_time)
                info.add([index], Marker(
                    start=start, end=end_time, name=name, category=category,
                    thread_id=thread_id_of(index),
                    data={**data, 'startTime': start,
                          'fetchStart': data.get('startTime')},
                    incomplete=True))
            continue

        if data_type == COMPOSITOR_SCREENSHOT:
            # A screenshot is shown until the next one of the same window.
            window_id = data.get('windowID')
            previous = previous_screenshot_markers.pop(window_id, None)
            if previous is not None:
                info.add([previous], Marker(
                    start=raw_markers.start_time[previous],
                    end=start_time,
                    name=COMPOSITOR_SCREENSHOT,
                    category=category,
                    thread_id=thread_id_of(previous),
                    data=raw_markers.data[previous]))
            if name != 'CompositorScreenshotWindowDestroyed':
                previous_screenshot_markers[window_id] = index
                continue

        elif data_type == 'IPC':
            shared_data = ipc_correlations.get(thread_id or 0, index)
            if shared_data is None:
                continue
            if data.get('direction') == 'sending' \
                    and data.get('phase') == 'transferEnd' \
                    and shared_data.get('sendStartTime') is not None:
                continue
            ipc_name = 'IPCOut' if data.get('direction') == 'sending' \
                else 'IPCIn'
            if data.get('sync'):
                ipc_name = 'Sync' + ipc_name
            start = end = data.get('startTime')
            incomplete = True
            if shared_data.get('startTime') is not None \
                    and shared_data.get('endTime') is not None:
                start = shared_data['startTime']
                end = shared_data['endTime']
                incomplete = False
            info.add([index], Marker(
                start=start, end=end, name=ipc_name, category=category,
                thread_id=thread_id_of(index),
                data={**data, **shared_data}, incomplete=incomplete))
            continue

        if phase == INSTANT:
            info.add([index], Marker(
                start=start_time, end=None, name=name, category=category,
                thread_id=thread_id_of(index), data=data))
        elif phase == INTERVAL:
            info.add([index], Marker(
                start=start_time, end=end_time, name=name, category=category,
                thread_id=thread_id_of(index), data=data))
        elif phase == INTERVAL_START:
            open_interval_markers.setdefault(name_index, []).append(index)
        elif phase == INTERVAL_END:
            open_for_name = open_interval_markers.get(name_index)
            if open_for_name:
                start_index = open_for_name.pop()
                info.add([start_index, index], Marker(
                    start=raw_markers.start_time[start_index],
                    end=end_time, name=name, category=category,
                    thread_id=thread_id_of(index),
                    data=_merge_interval_data(raw_markers.data[start_index],
                                              data)))
            else:
                # The start happened before the recording began.
                info.add([index], Marker(
                    start=min(end_time, thread_range.start),
                    end=end_time, name=name, category=category,
                    thread_id=thread_id_of(index), data=data,
                    incomplete=True))
        else:
            raise ProfileFormatError('unhandled marker phase {}'.format(phase))

    end_of_thread = thread_range.end
    for open_for_name in open_interval_markers.values():
        for start_index in open_for_name:
            start = raw_markers.start_time[start_index]
            info.add([start_index], Marker(
                start=start, end=max(end_of_thread, start),
                name=string_array[raw_markers.name[start_index]],
                category=raw_markers.category[start_index],
                thread_id=thread_id_of(start_index),
                data=raw_markers.data[start_index], incomplete=True))
    for start_index in open_network_markers.values():
        start = raw_markers.start_time[start_index]
        info.add([start_index], Marker(
            start=start, end=max(end_of_thread, start),
            name=string_array[raw_markers.name[start_index]],
            category=raw_markers.category[start_index],
            thread_id=thread_id_of(start_index),
            data=raw_markers.data[start_index], incomplete=True))
    for previous in previous_screenshot_markers.values():
        start = raw_markers.start_time[previous]
        info.add([previous], Marker(
            start=start, end=max(end_of_thread, start),
            name=COMPOSITOR_SCREENSHOT,
            category=raw_markers.category[previous],
            thread_id=thread_id_of(previous),
            data=raw_markers.data[previous]))
    return info


def filter_raw_marker_table_indexes_to_range(derived_marker_info,
                                             range_start, range_end):
    in_range = set()
    for marker, raw_indexes in zip(
            derived_marker_info.markers,
            derived_marker_info.marker_index_to_raw_marker_indexes):
        if marker.end is None:
            keep = range_start <= marker.start < range_end
        else:
            keep = marker.start < range_end and marker.end >= range_start
        if keep:
            in_range.update(raw_indexes)
    return sorted(in_range)


def filter_raw_marker_table_to_range(markers: RawMarkerTable,
                                     derived_marker_info: DerivedMarkerInfo,
                                     range_start: float, range_end: float):
    indexes = filter_raw_marker_table_indexes_to_range(
        derived_marker_info, range_start, range_end)
    return select_raw_markers(markers, indexes)
