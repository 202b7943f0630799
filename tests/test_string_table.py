import unittest

from profcore.errors import StringIndexError
from profcore.string_table import StringTable


class test_string_table(unittest.TestCase):

    def test_interning_is_idempotent(self):
        table = StringTable()
        first = table.index_for_string('foo')
        second = table.index_for_string('foo')
        self.assertEqual(first, second)
        self.assertEqual(table.get_string(first), 'foo')
        self.assertEqual(len(table), 1)

    def test_indexes_follow_insertion_order(self):
        table = StringTable()
        self.assertEqual(table.index_for_string('a'), 0)
        self.assertEqual(table.index_for_string('b'), 1)
        self.assertEqual(table.index_for_string('a'), 0)
        self.assertEqual(table.array, ['a', 'b'])

    def test_backing_array_is_shared(self):
        strings = ['x', 'y']
        table = StringTable.with_backing_array(strings)
        self.assertEqual(table.index_for_string('y'), 1)
        self.assertEqual(table.index_for_string('z'), 2)
        self.assertIs(table.array, strings)
        self.assertEqual(strings, ['x', 'y', 'z'])

    def test_duplicates_in_the_backing_array_keep_the_first_index(self):
        table = StringTable(['a', 'b', 'a'])
        self.assertEqual(table.index_for_string('a'), 0)
        self.assertEqual(len(table), 3)

    def test_has_index_and_has_string(self):
        table = StringTable(['a'])
        self.assertTrue(table.has_index(0))
        self.assertFalse(table.has_index(1))
        self.assertFalse(table.has_index(-1))
        self.assertFalse(table.has_index(None))
        self.assertTrue(table.has_string('a'))
        self.assertFalse(table.has_string('b'))

    def test_get_string_out_of_range(self):
        table = StringTable(['a'])
        with self.assertRaises(StringIndexError):
            table.get_string(3)
        # StringIndexError is also an IndexError.
        with self.assertRaises(IndexError):
            table.get_string(-1)

    def test_get_string_fallback(self):
        table = StringTable(['a'])
        with self.assertLogs('profcore', level='WARNING'):
            self.assertEqual(table.get_string(5, fallback='?'), '?')
        self.assertEqual(table.get_string(0, fallback='?'), 'a')


if __name__ == '__main__':
    unittest.main()
