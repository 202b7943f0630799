import math
from bisect import bisect_left
from dataclasses import dataclass

from profcore.constants import INSTANT, INTERVAL, INTERVAL_END, INTERVAL_START
from profcore.errors import ProfileFormatError, StackOrderingError


@dataclass
class StartEndRange:
    start: float
    end: float


def get_time_range_for_thread(thread, interval: float) -> StartEndRange:
    result = StartEndRange(math.inf, -math.inf)
    samples = thread.samples
    markers = thread.markers

    if samples.length:
        result.start = samples.time[0]
        result.end = samples.time[samples.length - 1] + interval
    elif markers.length:
        # Marker-only threads, e.g. from a profile recorded without sampling.
        for i in range(markers.length):
            start_time = markers.start_time[i]
            end_time = markers.end_time[i]
            phase = markers.phase[i]
            if phase in (INSTANT, INTERVAL_START):
                result.start = min(result.start, start_time)
                result.end = max(result.end, start_time + interval)
            elif phase == INTERVAL_END:
                result.start = min(result.start, end_time)
                result.end = max(result.end, end_time + interval)
            elif phase == INTERVAL:
                result.start = min(result.start, start_time, end_time)
                result.end = max(result.end, start_time + interval,
                                 end_time + interval)
            else:
                raise ProfileFormatError(
                    'unhandled marker phase {}'.format(phase))
    return result


def get_time_range_including_all_threads(profile) -> StartEndRange:
    meta = profile.meta
    if meta.profiling_start_time is not None and meta.profiling_end_time:
        return StartEndRange(meta.profiling_start_time,
                             meta.profiling_end_time)
    complete_range = StartEndRange(math.inf, -math.inf)
    for thread in profile.threads:
        thread_range = get_time_range_for_thread(thread, meta.interval)
        complete_range.start = min(complete_range.start, thread_range.start)
        complete_range.end = max(complete_range.end, thread_range.end)
    return complete_range


def filter_raw_thread_samples_to_range(thread, range_start: float,
                                       range_end: float):
    samples = thread.samples
    begin = bisect_left(samples.time, range_start)
    end = bisect_left(samples.time, range_end)
    new_samples = samples.clone()
    for name in new_samples.present_columns():
        setattr(new_samples, name, getattr(samples, name)[begin:end])
    new_samples.length = end - begin
    new_thread = thread.copy()
    new_thread.samples = new_samples
    return new_thread


def adjust_sample_timestamps(samples, delta: float):
    new_samples = samples.clone()
    new_samples.time = [t + delta for t in samples.time]
    return new_samples


def update_raw_thread_stacks(thread, convert_stack):
    """Returns a copy of the thread with every stack reference passed through
    `convert_stack`: the samples' stack column and the cause stacks of the
    marker payloads."""
    new_thread = thread.copy()

    new_samples = thread.samples.clone()
    new_samples.stack = [convert_stack(s) for s in thread.samples.stack]
    new_thread.samples = new_samples

    new_markers = thread.markers.clone()
    new_data = []
    for data in thread.markers.data:
        if data and isinstance(data.get('cause'), dict) \
                and data['cause'].get('stack') is not None:
            cause = dict(data['cause'])
            cause['stack'] = convert_stack(cause['stack'])
            data = dict(data)
            data['cause'] = cause
        new_data.append(data)
    new_markers.data = new_data
    new_thread.markers = new_markers
    return new_thread


def assert_stack_ordering(stack_table):
    """Checks that the prefix of every stack comes before it."""
    visited_stacks = {None}
    for i in range(stack_table.length):
        prefix = stack_table.prefix[i]
        if prefix not in visited_stacks:
            raise StackOrderingError(i, prefix)
        visited_stacks.add(i)
