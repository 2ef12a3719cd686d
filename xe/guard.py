# SPDX-License-Identifier: BSD-2-Clause

import os
import shlex
import signal
import subprocess
import syslog


class LockError(Exception):
    '''Raised when another instance already holds the lock file.'''


class HostError(Exception):
    '''Raised when this host must not run backups.'''


class LockFile:
    '''Exclusive lock file holding the current process id.

    The file is created with O_EXCL, so two instances can't both succeed.
    It is removed when the context is left, including when SIGTERM or
    SIGHUP arrive while it is held.'''

    _SIGNALS = (signal.SIGTERM, signal.SIGHUP,)

    def __init__(self, path):
        self._path = path
        self._handlers = {}
        self._held = False

    @property
    def Path(self):
        return self._path

    def Acquire(self):
        try:
            fd = os.open(self._path, os.O_CREAT | os.O_EXCL | os.O_WRONLY,
                         0o644)
        except FileExistsError:
            raise LockError(
                f'Lockfile {self._path} exists, exiting!') from None

        with os.fdopen(fd, 'w') as lock:
            lock.write(f'{os.getpid()}\n')
        self._held = True

        for signum in self._SIGNALS:
            self._handlers[signum] = signal.signal(signum, self._OnSignal)

    def Release(self):
        for signum, handler in self._handlers.items():
            signal.signal(signum, handler)
        self._handlers = {}

        if self._held:
            self._held = False
            try:
                os.remove(self._path)
            except FileNotFoundError:
                pass

    def _OnSignal(self, signum, frame):
        # Unwinds through __exit__, which removes the file
        raise SystemExit(128 + signum)

    def __enter__(self):
        self.Acquire()
        return self

    def __exit__(self, exc_type, exc, exc_tb):
        self.Release()


def LowerPriority(pid, niceness=15, ioClass=2, ioLevel=7,
                  log=syslog.syslog):
    '''Lower the CPU and I/O priority of `pid`.

    This is best effort, failures are logged and otherwise ignored.'''
    try:
        os.setpriority(os.PRIO_PROCESS, pid, niceness)
    except OSError as e:
        log(syslog.LOG_WARNING, f'Could not renice process {pid}: {e}')

    try:
        subprocess.check_call(
            ['ionice', '-c', str(ioClass), '-n', str(ioLevel),
             '-p', str(pid)],
            stdout=subprocess.DEVNULL)
    except (OSError, subprocess.CalledProcessError) as e:
        log(syslog.LOG_WARNING,
            f'Could not change I/O priority of process {pid}: {e}')


def ReadInventory(path):
    '''Parse the host inventory, a file of shell style KEY='value' lines.'''
    inventory = {}
    try:
        with open(path) as inventory_file:
            for line in inventory_file:
                for token in shlex.split(line, comments=True):
                    key, sep, value = token.partition('=')
                    if sep:
                        inventory[key] = value
    except OSError:
        raise HostError(
            'This does not appear to be a XenServer host. Aborting.') from None

    return inventory


def CheckPoolMaster(client, inventory):
    '''Make sure this host is the pool master, raise `HostError` if not.

    A pool without a master is treated like any other host mismatch.'''
    host_uuid = inventory.get('INSTALLATION_UUID', '')
    if not host_uuid:
        raise HostError(
            'The inventory does not contain INSTALLATION_UUID. Aborting.')

    try:
        master_uuid = client.GetPoolMaster()
    except (OSError, subprocess.CalledProcessError) as e:
        raise HostError(f'Could not query the pool master: {e}') from e

    if master_uuid != host_uuid:
        raise HostError(
            'xsbup must be run on the pool master and this host does not '
            'appear to be the master\n'
            f'\tPool master: {master_uuid}\n'
            f'\tThis host:   {host_uuid}')

    return master_uuid
