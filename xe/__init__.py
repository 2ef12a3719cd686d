# SPDX-License-Identifier: BSD-2-Clause

import re
import subprocess

__version__ = '1.0'


def _FieldName(key):
    '''Strip the access annotation, i.e. "name-label ( RW)" -> "name-label".'''
    return key.split('(', 1)[0].strip()


def ParseParam(lines, pattern):
    '''Yield the value of every line whose field name matches `pattern`.

    `xe` prints records as ``field-name ( RO): value`` lines. The value is
    everything after the first ``: ``. Lines which don't look like a field
    or don't match are skipped.'''
    if isinstance(pattern, str):
        pattern = re.compile(pattern)

    for line in lines:
        key, sep, value = line.partition(': ')
        if not sep:
            continue

        if pattern.fullmatch(_FieldName(key)):
            yield value.strip()


class XeVm:
    '''A virtual machine (or snapshot) as reported by `xe`.'''
    def __init__(self, uuid, name, powerState):
        self._uuid = uuid
        self._name = name
        self._powerState = powerState

    @property
    def Uuid(self):
        return self._uuid

    @property
    def Name(self):
        return self._name

    @property
    def PowerState(self):
        return self._powerState

    @property
    def IsRunning(self):
        return self._powerState == 'running'

    def __str__(self):
        return 'VM: {} ({}) : {}'.format(
            self._name, self._uuid, self._powerState)

    def __repr__(self):
        return 'XeVm({}, {}, {})'.format(
            repr(self._uuid),
            repr(self._name),
            repr(self._powerState))

    def __hash__(self):
        return hash(self.__key())

    def __eq__(self, other):
        return self.__key() == other.__key()

    def __key(self):
        return (self._uuid, self._name, self._powerState,)


def _FormatParams(params):
    args = []
    for key, value in params.items():
        if isinstance(value, bool):
            value = 'true' if value else 'false'
        args.append('{}={}'.format(key.replace('_', '-'), value))
    return args


class XeClient:
    '''Runs `xe` sub-commands against the local pool.

    Every failing invocation raises `subprocess.CalledProcessError`.
    Parameters are passed as keywords, underscores are turned into
    hyphens, so ``is_control_domain=False`` becomes
    ``is-control-domain=false``.'''

    def __init__(self, xe='xe',
                 srMetadataTool='/opt/xensource/libexec/backup-sr-metadata.py'):
        self._xe = xe
        self._srMetadataTool = srMetadataTool

    def Call(self, command, *flags, **params) -> str:
        args = [self._xe, command] + _FormatParams(params) + list(flags)
        return subprocess.check_output(args).decode('utf-8')

    def List(self, command, field='uuid', **params) -> list[str]:
        output = self.Call(command, **params).splitlines()
        return list(ParseParam(output, re.escape(field)))

    def ListVms(self, **filters) -> list[str]:
        return self.List('vm-list', **filters)

    def GetVmParam(self, uuid, name) -> str:
        return self.Call('vm-param-get', uuid=uuid, param_name=name).strip()

    def GetVm(self, uuid) -> XeVm:
        return XeVm(uuid,
                    self.GetVmParam(uuid, 'name-label'),
                    self.GetVmParam(uuid, 'power-state'))

    def ListSnapshots(self, name) -> list[str]:
        return self.List('snapshot-list', name_label=name)

    def ListVbds(self, field='uuid', **filters) -> list[str]:
        return self.List('vbd-list', field, **filters)

    def DestroyVdi(self, uuid):
        self.Call('vdi-destroy', uuid=uuid)

    def UninstallSnapshot(self, uuid):
        self.Call('snapshot-uninstall', uuid=uuid, force=True)

    def EjectVbd(self, uuid):
        self.Call('vbd-eject', uuid=uuid)

    def SnapshotVm(self, uuid, name) -> str:
        '''Snapshot the VM and return the uuid of the new snapshot.'''
        return self.Call('vm-snapshot', uuid=uuid,
                         new_name_label=name).strip()

    def ExportVm(self, uuid, filename):
        self.Call('vm-export', uuid=uuid, filename=str(filename))

    def GetPoolMaster(self) -> str:
        return self.Call('pool-list', '--minimal', params='master').strip()

    def DumpDatabase(self, filename):
        self.Call('pool-dump-database', file_name=str(filename))

    def BackupSrMetadata(self, filename):
        subprocess.check_call([self._srMetadataTool, '-f', str(filename)])

    def Listing(self, command) -> str:
        '''Return the unparsed output of a listing, i.e. ``vdi-list``.'''
        return self.Call(command)
