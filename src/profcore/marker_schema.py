from profcore.constants import COMPOSITOR_SCREENSHOT, STRING_INDEX_FIELD_FORMATS


def compute_string_index_marker_fields_by_data_type(marker_schemas):
    """Returns a dict from marker data type to the payload keys that hold
    string table indexes."""
    fields_by_data_type = {
        # CompositorScreenshot markers have no schema, their url field is
        # always a string index.
        COMPOSITOR_SCREENSHOT: ['url'],
    }
    for schema in marker_schemas:
        string_index_fields = [
            f.key for f in schema.fields
            if f.key and f.format in STRING_INDEX_FIELD_FORMATS
        ]
        if string_index_fields:
            fields_by_data_type[schema.name] = string_index_fields
    return fields_by_data_type


class MarkerStringFields(object):
    """Answers which fields of a marker payload refer to the string table."""

    def __init__(self, marker_schemas):
        self._fields_by_data_type = \
            compute_string_index_marker_fields_by_data_type(marker_schemas)

    def fields_for(self, data) -> list[str]:
        if not data or not data.get('type'):
            return []
        return self._fields_by_data_type.get(data['type'], [])

    def string_indexes(self, data):
        for key in self.fields_for(data):
            value = data.get(key)
            if isinstance(value, int) and not isinstance(value, bool):
                yield value

    def remap(self, data, translate):
        """Returns a payload with every string index passed through
        `translate`. The input payload is never modified."""
        new_data = data
        for key in self.fields_for(data):
            value = data.get(key)
            if isinstance(value, int) and not isinstance(value, bool):
                if new_data is data:
                    new_data = dict(data)
                new_data[key] = translate(value)
        return new_data
