import json

import pytest

from profcore.cli import run
from profcore.global_data_collector import GlobalDataCollector

from profile_builders import make_profile, make_thread


def write_profile(path, threads_samples, unused_strings=()):
    collector = GlobalDataCollector()
    threads = [
        make_thread(collector, samples, name='Thread {}'.format(tid),
                    tid=tid)
        for tid, samples in enumerate(threads_samples, start=1)
    ]
    for s in unused_strings:
        collector.get_string_table().index_for_string(s)
    path.write_text(json.dumps(make_profile(collector, threads).json()))
    return str(path)


def read_stdout_json(capsys):
    return json.loads(capsys.readouterr().out)


def test_info(tmp_path, capsys):
    path = write_profile(tmp_path / 'a.json', [[(0, ['main']),
                                                (1, ['main', 'f'])]])
    run(['info', path])
    info = read_stdout_json(capsys)
    assert info['interval'] == 1.0
    assert info['strings'] == 2
    assert info['threads'] == [{
        'name': 'Thread 1',
        'processName': None,
        'pid': 1,
        'tid': 1,
        'samples': 2,
        'markers': 0,
        'stacks': 2,
        'funcs': 2,
    }]


def test_compact_to_file(tmp_path, capsys):
    path = write_profile(tmp_path / 'a.json', [[(0, ['main'])]],
                         unused_strings=['unused'])
    output = tmp_path / 'compacted.json'
    run(['compact', path, '-o', str(output)])
    assert read_stdout_json(capsys) == {'output': str(output), 'threads': 1}
    compacted = json.loads(output.read_text())
    assert compacted['shared']['stringArray'] == ['main']


def test_merge(tmp_path, capsys):
    path = write_profile(tmp_path / 'a.json', [[(0, ['main'])],
                                               [(1, ['other'])]])
    run(['merge', path, '--threads', '0,1'])
    profile = read_stdout_json(capsys)
    assert len(profile['threads']) == 3
    merged = profile['threads'][2]
    assert merged['name'] == 'Merged thread'
    assert merged['samples']['threadId'] == [1, 2]


def test_merge_with_unknown_thread_index_exits(tmp_path):
    path = write_profile(tmp_path / 'a.json', [[(0, ['main'])],
                                               [(1, ['other'])]])
    output = tmp_path / 'merged.json'
    with pytest.raises(SystemExit) as excinfo:
        run(['merge', path, '--threads', '0,9', '-o', str(output)])
    assert excinfo.value.code == 1
    assert not output.exists()


def test_diff(tmp_path, capsys):
    path_a = write_profile(tmp_path / 'a.json', [[(10, ['main']),
                                                  (11, ['main'])]])
    path_b = write_profile(tmp_path / 'b.json', [[(0, ['main'])],
                                                 [(3, ['other'])]])
    run(['diff', path_a, path_b, '--thread-b', '1', '--range-a', '1,2'])
    profile = read_stdout_json(capsys)
    names = [t['name'] for t in profile['threads']]
    assert names == ['Thread 1', 'Thread 2', 'Diff between 1 and 2']
    assert profile['threads'][0]['processName'] == \
        '{}: Thread 1'.format(path_a)
    # Only the sample at 11 is in the range.
    assert profile['threads'][0]['samples']['time'] == [0]
    # On a tie the second profile's sample comes first.
    assert profile['threads'][2]['samples']['weight'] == [1, -1]


def test_unknown_command(capsys):
    with pytest.raises(SystemExit) as excinfo:
        run(['frobnicate'])
    assert excinfo.value.code == 1
    assert 'Unrecognized command: frobnicate' in capsys.readouterr().out


def test_missing_input_exits(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        run(['info', str(tmp_path / 'missing.json')])
    assert excinfo.value.code == 1


def test_invalid_range(tmp_path):
    path = write_profile(tmp_path / 'a.json', [[(0, ['main'])]])
    # argparse exits with 2 on bad arguments.
    with pytest.raises(SystemExit) as excinfo:
        run(['diff', path, path, '--range-a', 'soon'])
    assert excinfo.value.code == 2


def test_import_chrome_trace(tmp_path, capsys, trace_events):
    path = tmp_path / 'trace.json'
    path.write_text(json.dumps(trace_events))
    output = tmp_path / 'profile.json'
    run(['import', str(path), '--output', str(output)])
    assert read_stdout_json(capsys) == {'output': str(output), 'threads': 1}
    profile = json.loads(output.read_text())
    assert profile['meta']['product'] == 'Chrome Trace'
    assert profile['threads'][0]['name'] == 'CrBrowserMain'
