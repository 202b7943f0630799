import base64
import io

import pytest
from PIL import Image

from profcore.global_data_collector import GlobalDataCollector


@pytest.fixture
def collector():
    return GlobalDataCollector()


@pytest.fixture
def cpu_profile():
    """A standalone CPU profile, as saved by the DevTools or Node.js."""
    return {
        'startTime': 0,
        'endTime': 1000,
        'samples': [1, 2, 1],
        'timeDeltas': [0, 600, 600],
        'nodes': [
            {
                'id': 1,
                'callFrame': {
                    'functionName': '(root)'
                }
            },
            {
                'id': 2,
                'callFrame': {
                    'functionName': 'foo',
                    'url': 'a.js',
                    'lineNumber': 0
                }
            },
        ],
    }


@pytest.fixture
def trace_events():
    return [
        {
            'name': 'thread_name',
            'ph': 'M',
            'pid': 1,
            'tid': 2,
            'ts': 0,
            'args': {
                'name': 'CrBrowserMain'
            }
        },
        {
            'name': 'process_name',
            'ph': 'M',
            'pid': 1,
            'tid': 2,
            'ts': 0,
            'args': {
                'name': 'Browser'
            }
        },
        {
            'name': 'Profile',
            'ph': 'P',
            'id': '0x1',
            'pid': 1,
            'tid': 2,
            'ts': 100,
            'args': {
                'data': {
                    'startTime': 1000
                }
            }
        },
        {
            'name': 'ProfileChunk',
            'ph': 'P',
            'id': '0x1',
            'pid': 1,
            'tid': 2,
            'ts': 200,
            'args': {
                'data': {
                    'cpuProfile': {
                        'nodes': [
                            {
                                'id': 1,
                                'callFrame': {
                                    'functionName': '(root)'
                                }
                            },
                            {
                                'id': 2,
                                'parent': 1,
                                'callFrame': {
                                    'functionName': 'main',
                                    'url': 'https://example.com/app.js',
                                    'lineNumber': 9,
                                    'columnNumber': 4
                                }
                            },
                            {
                                'id': 3,
                                'parent': 2,
                                'callFrame': {
                                    'functionName': '(garbage collector)'
                                }
                            },
                        ],
                        'samples': [2, 3, 3, 2],
                    },
                    'timeDeltas': [1000, 1000, 1000, 1000],
                }
            }
        },
        {
            'name': 'RunTask',
            'ph': 'X',
            'pid': 1,
            'tid': 2,
            'ts': 1500,
            'dur': 500,
            'cat': 'toplevel',
            'args': {}
        },
        {
            'name': 'Compile',
            'ph': 'B',
            'pid': 1,
            'tid': 2,
            'ts': 2000,
            'args': {
                'detail': 'app.js'
            }
        },
        {
            'name': 'Compile',
            'ph': 'E',
            'pid': 1,
            'tid': 2,
            'ts': 2500
        },
        {
            'name': 'click',
            'ph': 'I',
            'pid': 1,
            'tid': 2,
            'ts': 2600,
            'args': {
                'data': {
                    'type': 'click'
                }
            }
        },
    ]


@pytest.fixture(scope='session')
def jpeg_snapshot():
    """Base64 of a 4x3 JPEG image."""
    buf = io.BytesIO()
    Image.new('RGB', (4, 3), color='red').save(buf, 'JPEG')
    return base64.b64encode(buf.getvalue()).decode('ascii')
