import argparse
import asyncio
import json
import logging
import sys

from profcore.compacting import compute_compacted_profile
from profcore.configured_logger import logger, set_level
from profcore.errors import ProfcoreError, ThreadSelectionError
from profcore.loader import load_profile
from profcore.merge_compare import (
    ProfileState,
    merge_profiles_for_diffing,
    merge_threads,
)
from profcore.profile_data import StartEndRange

COMMANDS = ('import', 'compact', 'diff', 'merge', 'info')


class MultiCommandParser(object):
    def __init__(self, argv=None):
        self._argv = sys.argv[1:] if argv is None else list(argv)
        parser = argparse.ArgumentParser(
            usage="""profcore <command> [<args>]

Commands:
import     {}
compact    {}
diff       {}
merge      {}
info       {}
            """.format(
                self.import_.__doc__,
                self.compact.__doc__,
                self.diff.__doc__,
                self.merge.__doc__,
                self.info.__doc__,
            )
        )
        parser.add_argument('command', help='Command to run')
        # Only the command name here, its own parser handles the rest.
        args = parser.parse_args(self._argv[:1])
        if args.command not in COMMANDS:
            print("Unrecognized command: {}\n".format(args.command))
            parser.print_help()
            sys.exit(1)
        # `import` is a keyword.
        method = getattr(self, args.command if args.command != 'import'
                         else 'import_')
        response = method()
        if response is not None:
            print(json.dumps(response))

    @staticmethod
    def _get_command_parser(description):
        parser = argparse.ArgumentParser(
            description=description,
            formatter_class=argparse.ArgumentDefaultsHelpFormatter,
        )
        parser.add_argument(
            '--debug',
            action="store_true",
            default=False,
            help='set to emit debug logs',
        )
        return parser

    @staticmethod
    def _add_output_arg(parser):
        parser.add_argument(
            '-o',
            '--output',
            type=str,
            help='file to write the resulting profile to, stdout if not set',
        )

    def _get_command_args(self, parser):
        # Skip the command name.
        args = parser.parse_args(self._argv[1:])
        if args.debug:
            set_level(logging.DEBUG)
        return args

    @staticmethod
    def _write_profile(profile, output):
        if output is None:
            return profile.json()
        with open(output, 'w') as f:
            json.dump(profile.json(), f)
        logger.info('Wrote %s', output)
        return {'output': output, 'threads': len(profile.threads)}

    def import_(self):
        """Convert a profile of any supported format to the processed format"""
        parser = self._get_command_parser(self.import_.__doc__)
        self._add_output_arg(parser)
        parser.add_argument('input', type=str, help='file path or http(s) url')
        args = self._get_command_args(parser)
        profile = asyncio.run(load_profile(args.input))
        return self._write_profile(profile, args.output)

    def compact(self):
        """Drop the strings that nothing in the profile refers to"""
        parser = self._get_command_parser(self.compact.__doc__)
        self._add_output_arg(parser)
        parser.add_argument('input', type=str)
        args = self._get_command_args(parser)
        profile = asyncio.run(load_profile(args.input))
        compacted = compute_compacted_profile(profile)
        logger.info('Kept %d of %d strings',
                    len(compacted.profile.shared.string_array),
                    len(profile.shared.string_array))
        return self._write_profile(compacted.profile, args.output)

    def diff(self):
        """Compare one thread of two profiles"""
        parser = self._get_command_parser(self.diff.__doc__)
        self._add_output_arg(parser)
        parser.add_argument('input_a', type=str)
        parser.add_argument('input_b', type=str)
        parser.add_argument(
            '--thread-a',
            type=int,
            default=0,
            help='index of the thread to compare in the first profile',
        )
        parser.add_argument(
            '--thread-b',
            type=int,
            default=0,
            help='index of the thread to compare in the second profile',
        )
        parser.add_argument(
            '--range-a',
            type=_parse_range,
            help='start,end in ms of the part of the first profile to use',
        )
        parser.add_argument(
            '--range-b',
            type=_parse_range,
            help='start,end in ms of the part of the second profile to use',
        )
        args = self._get_command_args(parser)

        async def load_both():
            return await asyncio.gather(load_profile(args.input_a),
                                        load_profile(args.input_b))

        profiles = asyncio.run(load_both())
        states = [
            ProfileState(profile_name=source,
                         selected_threads={thread_index},
                         committed_ranges=[range_] if range_ else [])
            for source, thread_index, range_ in (
                (args.input_a, args.thread_a, args.range_a),
                (args.input_b, args.thread_b, args.range_b),
            )
        ]
        merged = merge_profiles_for_diffing(profiles, states)
        return self._write_profile(merged.profile, args.output)

    def merge(self):
        """Add a thread merging some threads of a profile"""
        parser = self._get_command_parser(self.merge.__doc__)
        self._add_output_arg(parser)
        parser.add_argument('input', type=str)
        parser.add_argument(
            '-t',
            '--threads',
            type=_parse_indexes,
            required=True,
            help='comma separated indexes of the threads to merge',
        )
        args = self._get_command_args(parser)
        profile = asyncio.run(load_profile(args.input))
        for index in args.threads:
            if not 0 <= index < len(profile.threads):
                raise ThreadSelectionError(
                    'Thread index {} is out of range, the profile has {} '
                    'threads'.format(index, len(profile.threads)))
        profile.threads.append(
            merge_threads([profile.threads[i] for i in args.threads]))
        return self._write_profile(profile, args.output)

    def info(self):
        """Print a summary of the threads of a profile"""
        parser = self._get_command_parser(self.info.__doc__)
        parser.add_argument('input', type=str)
        args = self._get_command_args(parser)
        profile = asyncio.run(load_profile(args.input))
        return {
            'product': profile.meta.product,
            'interval': profile.meta.interval,
            'strings': len(profile.shared.string_array),
            'libs': len(profile.libs),
            'threads': [{
                'name': thread.name,
                'processName': thread.process_name,
                'pid': thread.pid,
                'tid': thread.tid,
                'samples': thread.samples.length,
                'markers': thread.markers.length,
                'stacks': thread.stack_table.length,
                'funcs': thread.func_table.length,
            } for thread in profile.threads],
        }


def _parse_range(value):
    try:
        start, end = (float(v) for v in value.split(','))
    except ValueError:
        raise argparse.ArgumentTypeError(
            'expected start,end but got {}'.format(value))
    return StartEndRange(start, end)


def _parse_indexes(value):
    try:
        return [int(v) for v in value.split(',')]
    except ValueError:
        raise argparse.ArgumentTypeError(
            'expected comma separated indexes but got {}'.format(value))


def run(argv=None):
    try:
        MultiCommandParser(argv)
    except (ProfcoreError, OSError) as e:
        logger.error('%s', e)
        sys.exit(1)


if __name__ == "__main__":
    run()
