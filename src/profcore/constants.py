# Marker phases.
INSTANT = 0
INTERVAL = 1
INTERVAL_START = 2
INTERVAL_END = 3

MARKER_PHASES = (INSTANT, INTERVAL, INTERVAL_START, INTERVAL_END)


class ResourceType:
    UNKNOWN = 0
    LIBRARY = 1
    ADDON = 2
    WEBHOST = 3
    OTHERHOST = 4
    URL = 5


# Marker schema field formats whose values are indexes into the string table.
STRING_INDEX_FIELD_FORMATS = {'unique-string', 'flow-id', 'terminating-flow-id'}

COMPOSITOR_SCREENSHOT = 'CompositorScreenshot'
