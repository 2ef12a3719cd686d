#!/usr/bin/env python3

# SPDX-License-Identifier: BSD-2-Clause

import xe
import xe.backup
import xe.guard
import xe.report

import argparse
import os
import sys
import syslog
from contextlib import ContextDecorator

try:
    import tomllib as toml
except ImportError:
    import tomli as toml

__version__ = '1.0'

_DEFAULT_CONFIG = {
    'destination': None,
    'retain': 3,
    'all': False,
    'lock-file': '/var/run/xsbup.pid',
    'inventory': '/etc/xensource-inventory',
    'xe': 'xe',
    'sr-metadata-tool': '/opt/xensource/libexec/backup-sr-metadata.py',
    'niceness': 15,
    'ionice-class': 2,
    'ionice-level': 7,
}


class syslog_context(ContextDecorator):
    def __init__(self, name):
        self.__name = name

    def __enter__(self):
        syslog.openlog(self.__name, syslog.LOG_PID)

    def __exit__(self, exc_type, exc, exc_tb):
        syslog.closelog()


class _ArgumentParser(argparse.ArgumentParser):
    # Usage errors exit with 1, not argparse's 2
    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f'{self.prog}: error: {message}\n')


def _retain_count(value):
    count = int(value)
    if count < 1:
        raise argparse.ArgumentTypeError(
            f'retention count must be at least 1: {value}')
    return count


def _level(value):
    try:
        return xe.report.ParseLevel(value)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f'invalid verbosity level: {value}') from None


def _fail(message):
    syslog.syslog(syslog.LOG_ERR, message)
    print(message, file=sys.stderr)
    return 1


@syslog_context('xsbup')
def _run(config, name, log):
    client = xe.XeClient(config['xe'],
                         srMetadataTool=config['sr-metadata-tool'])

    # Is this the master of a XenServer pool?
    try:
        inventory = xe.guard.ReadInventory(config['inventory'])
        xe.guard.CheckPoolMaster(client, inventory)
    except xe.guard.HostError as e:
        return _fail(str(e))

    destination = config['destination']
    if not destination or not os.path.isdir(destination):
        return _fail(f'Not a valid path: {destination}')
    if not os.access(destination, os.W_OK):
        return _fail(f'Permission denied: {destination}')

    retain = config['retain']
    if isinstance(retain, bool) or not isinstance(retain, int) or retain < 1:
        return _fail(f'Not a valid retention count: {retain}')

    lock = xe.guard.LockFile(config['lock-file'])
    try:
        lock.Acquire()
    except xe.guard.LockError as e:
        return _fail(str(e))
    except OSError as e:
        return _fail(f'Could not create lockfile {lock.Path}: {e}')

    try:
        # Keep the impact on running VMs low
        xe.guard.LowerPriority(os.getpid(),
                               niceness=config['niceness'],
                               ioClass=config['ionice-class'],
                               ioLevel=config['ionice-level'],
                               log=log)

        log(syslog.LOG_INFO, 'xsbup started')
        log(syslog.LOG_INFO, f'\tBackups will be written to {destination}')

        result = xe.backup.BackupPool(client, destination,
                                      retain=retain,
                                      allVms=config['all'],
                                      name=name,
                                      log=log)

        if not result.VmsListed:
            log(syslog.LOG_ERR, f'xsbup failed: {result}')
            return 1
        elif not result.Complete:
            log(syslog.LOG_WARNING, f'xsbup finished: {result}')
        else:
            log(syslog.LOG_INFO, f'xsbup finished: {result}')
    finally:
        lock.Release()

    return 0


def main(argv=None):
    parser = _ArgumentParser(
        prog='xsbup',
        description='Nightly XVA backups of the VMs in a XenServer pool.')
    parser.add_argument('-d', dest='destination', metavar='PATH',
                        help='Path to write backups to')
    parser.add_argument('-n', dest='name', metavar='NAME-LABEL',
                        help='Backup a specific VM only')
    parser.add_argument('-r', dest='retain', metavar='NUMBER',
                        type=_retain_count,
                        help='Number of backups to retain per VM (default: 3)')
    parser.add_argument('-a', dest='all', action='store_const', const=True,
                        help='Backup all VMs (not just running VMs)')
    parser.add_argument('-v', dest='level', metavar='LEVEL', type=_level,
                        default=syslog.LOG_INFO,
                        help='Verbosity, a syslog level such as "debug" '
                             'or 0-7 (default: info)')
    parser.add_argument('-q', dest='quiet', action='store_true',
                        help='Do not print progress')
    parser.add_argument('-c', '--config', type=argparse.FileType('rb'),
                        help='TOML configuration file')
    parser.add_argument('--version', action='version',
                        version=f'%(prog)s {__version__}')

    args = parser.parse_args(argv)

    config = dict(_DEFAULT_CONFIG)

    if args.config:
        with args.config:
            try:
                config.update(toml.load(args.config))
            except toml.TOMLDecodeError as e:
                return _fail(f'Invalid configuration {args.config.name}: {e}')

    for key in ('destination', 'retain', 'all',):
        if getattr(args, key) is not None:
            config[key] = getattr(args, key)

    log = xe.report.Reporter(args.level, quiet=args.quiet)
    return _run(config, args.name, log)


if __name__ == '__main__':
    sys.exit(main())
