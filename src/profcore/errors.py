class ProfcoreError(Exception):
    pass


class ProfileFormatError(ProfcoreError):
    """The input looked like a known format but could not be processed."""
    pass


class UnrecognizedProfileFormatError(ProfcoreError):
    def __init__(self):
        msg = 'the input does not match any of the supported profile formats'
        super(UnrecognizedProfileFormatError, self).__init__(msg)


class StackOrderingError(ProfcoreError):
    def __init__(self, stack_index, prefix):
        msg = 'the stack ordering is incorrect: stack {} has prefix {} ' \
              'which was not seen before it'.format(stack_index, prefix)
        super(StackOrderingError, self).__init__(msg)
        self.stack_index = stack_index
        self.prefix = prefix


class TranslationError(ProfcoreError):
    """An index was missing from a translation map.

    This always indicates a bug in the merging or compacting code and is never
    caused by user input.
    """

    def __init__(self, what, index, owner=None):
        if owner is None:
            msg = "couldn't find {} {} in the translation map".format(
                what, index)
        else:
            msg = "couldn't find the {} of {} in the translation map".format(
                what, owner)
        super(TranslationError, self).__init__(msg)


class StringIndexError(ProfcoreError, IndexError):
    def __init__(self, index):
        msg = 'string table has no entry at index {}'.format(index)
        super(StringIndexError, self).__init__(msg)
        self.index = index


class TableLengthError(ProfcoreError):
    pass


class ThreadSelectionError(ProfcoreError):
    pass


class ProfileFetchError(ProfcoreError):
    def __init__(self, url, reason):
        msg = 'could not fetch the profile from {}: {}'.format(url, reason)
        super(ProfileFetchError, self).__init__(msg)
        self.url = url
