# SPDX-License-Identifier: BSD-2-Clause

import pathlib
import subprocess

import pytest

import xe


class FakeXe:
    '''In-memory stand-in for `xe.XeClient`.

    Method names listed in `failing` raise like a failing `xe` call,
    uuids in `failExports` fail half way through the export.'''

    def __init__(self, master='host-0001'):
        self.vms = {}
        self.snapshots = {}
        self.cds = {}
        self.master = master
        self.calls = []
        self.failing = set()
        self.failExports = set()
        self._counter = 0

    def _NewUuid(self, kind):
        self._counter += 1
        return f'{kind}-{self._counter:04d}'

    def _Call(self, name, *args):
        self.calls.append((name,) + args)
        if name in self.failing:
            raise subprocess.CalledProcessError(1, ['xe', name])

    def CallNames(self):
        return [call[0] for call in self.calls]

    def AddVm(self, name, power='running', control=False):
        uuid = self._NewUuid('vm')
        self.vms[uuid] = {'name': name, 'power': power, 'control': control}
        return uuid

    def AddSnapshot(self, name, of, disks=1):
        uuid = self._NewUuid('snapshot')
        self.snapshots[uuid] = {
            'name': name,
            'of': of,
            'vdis': [self._NewUuid('vdi') for _ in range(disks)],
        }
        return uuid

    def InsertCd(self, vmUuid):
        uuid = self._NewUuid('vbd')
        self.cds[uuid] = vmUuid
        return uuid

    def ListVms(self, is_control_domain=None, power_state=None,
                name_label=None):
        self._Call('ListVms')
        result = []
        for uuid, vm in self.vms.items():
            if is_control_domain is not None and \
                    vm['control'] != is_control_domain:
                continue
            if power_state is not None and vm['power'] != power_state:
                continue
            if name_label is not None and vm['name'] != name_label:
                continue
            result.append(uuid)
        return result

    def GetVm(self, uuid):
        self._Call('GetVm', uuid)
        if uuid in self.vms:
            vm = self.vms[uuid]
            return xe.XeVm(uuid, vm['name'], vm['power'])
        if uuid in self.snapshots:
            return xe.XeVm(uuid, self.snapshots[uuid]['name'], 'halted')
        raise subprocess.CalledProcessError(1, ['xe', 'vm-param-get'])

    def ListSnapshots(self, name):
        self._Call('ListSnapshots', name)
        return [uuid for uuid, snapshot in self.snapshots.items()
                if snapshot['name'] == name]

    def ListVbds(self, field='uuid', vm_uuid=None, type=None, empty=None):
        self._Call('ListVbds', field, vm_uuid, type)
        if type == 'CD':
            return [uuid for uuid, vm in self.cds.items() if vm == vm_uuid]
        if type == 'Disk' and vm_uuid in self.snapshots:
            return list(self.snapshots[vm_uuid]['vdis'])
        return []

    def DestroyVdi(self, uuid):
        self._Call('DestroyVdi', uuid)
        for snapshot in self.snapshots.values():
            if uuid in snapshot['vdis']:
                snapshot['vdis'].remove(uuid)

    def UninstallSnapshot(self, uuid):
        self._Call('UninstallSnapshot', uuid)
        del self.snapshots[uuid]

    def EjectVbd(self, uuid):
        self._Call('EjectVbd', uuid)
        del self.cds[uuid]

    def SnapshotVm(self, uuid, name):
        self._Call('SnapshotVm', uuid, name)
        return self.AddSnapshot(name, uuid)

    def ExportVm(self, uuid, filename):
        self._Call('ExportVm', uuid, str(filename))
        path = pathlib.Path(filename)
        if uuid in self.failExports:
            path.write_text('partial')
            raise subprocess.CalledProcessError(1, ['xe', 'vm-export'])
        if path.exists():
            raise subprocess.CalledProcessError(1, ['xe', 'vm-export'])
        path.write_text(f'xva of {uuid}')

    def GetPoolMaster(self):
        self._Call('GetPoolMaster')
        return self.master

    def DumpDatabase(self, filename):
        self._Call('DumpDatabase', str(filename))
        path = pathlib.Path(filename)
        if path.exists():
            raise subprocess.CalledProcessError(1, ['xe', 'pool-dump-database'])
        path.write_text('pool database')

    def BackupSrMetadata(self, filename):
        self._Call('BackupSrMetadata', str(filename))
        pathlib.Path(filename).write_text('<meta/>')

    def Listing(self, command):
        self._Call('Listing', command)
        return f'{command} output\n'


class RecordingLog:
    '''Collects (priority, message) tuples instead of logging them.'''
    def __init__(self):
        self.messages = []

    def __call__(self, priority, message):
        self.messages.append((priority, message,))

    def Priorities(self):
        return [priority for priority, _ in self.messages]


@pytest.fixture
def fake_xe():
    return FakeXe()


@pytest.fixture
def recording_log():
    return RecordingLog()
