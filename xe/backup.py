# SPDX-License-Identifier: BSD-2-Clause

import datetime
import glob
import os
import pathlib
import subprocess
import syslog
from typing import Optional

SNAPSHOT_SUFFIX = '_xsbup'

# Anything an `xe` call or the file system can throw at a single VM
_STEP_ERRORS = (subprocess.CalledProcessError, OSError,)


def SnapshotName(vmName):
    return vmName + SNAPSHOT_SUFFIX


def ArchiveName(vmName, date):
    '''The archive file name. The date must stay %Y%m%d, as pruning relies
    on file names sorting chronologically.'''
    return '{}-{:%Y%m%d}.xva'.format(vmName, date)


def EnumerateVms(client, allVms=False, name=None) -> list[str]:
    '''Get the uuids of the VMs to back up.

    By default only running VMs are returned. `allVms` returns every VM
    regardless of power state and takes precedence over `name`, which
    selects VMs by name label. Control domains are never returned unless
    asked for by name.'''
    if allVms:
        return client.ListVms(is_control_domain=False)
    elif name is not None:
        return client.ListVms(name_label=name)
    else:
        return client.ListVms(power_state='running', is_control_domain=False)


def DeleteSnapshot(client, snapshotUuid):
    '''Delete a snapshot together with its disks.

    snapshot-uninstall sometimes leaves stray VDIs behind in the SR, so
    the disks are destroyed one by one before the snapshot itself.'''
    for vdi_uuid in client.ListVbds('vdi-uuid', vm_uuid=snapshotUuid,
                                    type='Disk', empty=False):
        client.DestroyVdi(vdi_uuid)

    client.UninstallSnapshot(snapshotUuid)


def PrepareVm(client, vmUuid, vm=None, log=syslog.syslog) -> Optional[str]:
    '''Get a VM into a clean state for the backup.

    Leftover snapshots of earlier runs are removed and any inserted CD is
    ejected. Running VMs get snapshotted and the snapshot uuid is
    returned; for any other VM the result is None and the VM itself gets
    exported. Pass `vm` when the XeVm is already known to skip the
    lookup. Errors propagate.'''
    if vm is None:
        vm = client.GetVm(vmUuid)
    snapshot_name = SnapshotName(vm.Name)

    for previous in client.ListSnapshots(snapshot_name):
        log(syslog.LOG_NOTICE,
            f'Removing leftover snapshot {previous} of VM "{vm.Name}"')
        DeleteSnapshot(client, previous)

    for vbd_uuid in client.ListVbds(vm_uuid=vmUuid, type='CD', empty=False):
        log(syslog.LOG_INFO, f'Ejecting CD {vbd_uuid} from VM "{vm.Name}"')
        client.EjectVbd(vbd_uuid)

    if vm.IsRunning:
        return client.SnapshotVm(vmUuid, snapshot_name)

    return None


def ExportXva(client, sourceUuid, destinationDir, filename,
              log=syslog.syslog) -> bool:
    '''Export `sourceUuid` to `destinationDir/filename`.

    An existing archive of the same name is rolled to `filename.prev`
    first and only removed once the new export has succeeded. If the
    export fails, the partial file is removed and the rolled archive is
    left in place. Returns whether the export succeeded.'''
    destination_dir = pathlib.Path(destinationDir)
    target = destination_dir / filename
    rolled = destination_dir / (filename + '.prev')

    try:
        destination_dir.mkdir(exist_ok=True)

        if target.exists():
            log(syslog.LOG_DEBUG, f'Rolling "{target}" to "{rolled}"')
            os.replace(target, rolled)
    except OSError as e:
        log(syslog.LOG_ERR, f'Could not prepare "{destination_dir}": {e}')
        return False

    try:
        client.ExportVm(sourceUuid, target)
    except _STEP_ERRORS as e:
        log(syslog.LOG_ERR, f'Export of {sourceUuid} to "{target}" '
            f'failed: {e}')
        try:
            if target.exists():
                target.unlink()
        except OSError as e:
            log(syslog.LOG_ERR,
                f'Could not remove partial export "{target}": {e}')
        if rolled.exists():
            log(syslog.LOG_WARNING,
                f'Previous backup kept as "{rolled}"')
        return False

    try:
        if rolled.exists():
            rolled.unlink()
    except OSError as e:
        log(syslog.LOG_WARNING,
            f'Could not remove previous backup "{rolled}", it is still '
            f'there: {e}')

    return True


def RemoveRolledArchives(vmName, directory, log=syslog.syslog):
    '''Delete `.prev` archives a failed export left behind.

    Only call this after a successful export. Returns the deleted files.'''
    rolled = sorted(
        pathlib.Path(directory).glob(glob.escape(vmName) + '-*.xva.prev'),
        key=lambda p: p.name)

    for archive in rolled:
        log(syslog.LOG_INFO, f'Deleting superseded backup "{archive}"')
        archive.unlink()

    return rolled


def PruneArchives(vmName, directory, keep, log=syslog.syslog):
    '''Delete all but the `keep` newest archives of a VM.

    Returns the list of deleted files, oldest first.'''
    if keep < 1:
        raise ValueError(f'keep must be at least 1, got {keep}')

    archives = sorted(
        pathlib.Path(directory).glob(glob.escape(vmName) + '-*.xva'),
        key=lambda p: p.name)

    expired = archives[:-keep]
    for archive in expired:
        log(syslog.LOG_INFO, f'Deleting expired backup "{archive}"')
        archive.unlink()

    return expired


def DumpPoolMetadata(client, destination, date, log=syslog.syslog):
    '''Write the pool database, SR metadata and VDI/VBD listings.

    File names carry the abbreviated weekday, so each file is overwritten
    a week later. Returns the written paths.'''
    destination = pathlib.Path(destination)
    day = date.strftime('%a')

    pool_db = destination / f'pool_{day}.db'
    pool_sr = destination / f'sr_{day}.xml'
    vdi_mapping = destination / f'vdi-mapping_{day}.txt'
    vbd_mapping = destination / f'vbd-mapping_{day}.txt'

    # xe refuses to overwrite an existing dump
    if pool_db.exists():
        pool_db.unlink()
    client.DumpDatabase(pool_db)

    client.BackupSrMetadata(pool_sr)

    # Human readable reference copies
    vdi_mapping.write_text(client.Listing('vdi-list'))
    vbd_mapping.write_text(client.Listing('vbd-list'))

    log(syslog.LOG_DEBUG, f'Wrote pool metadata to "{destination}"')
    return [pool_db, pool_sr, vdi_mapping, vbd_mapping]


class BackupResult:
    '''Outcome of a backup run.'''
    def __init__(self):
        self._succeeded = []
        self._failed = []
        self._metadata = False
        self._listed = True

    @property
    def Succeeded(self):
        return self._succeeded

    @property
    def Failed(self):
        return self._failed

    @property
    def MetadataDumped(self):
        return self._metadata

    @MetadataDumped.setter
    def MetadataDumped(self, value):
        self._metadata = value

    @property
    def VmsListed(self):
        return self._listed

    @VmsListed.setter
    def VmsListed(self, value):
        self._listed = value

    @property
    def Complete(self):
        return self._listed and self._metadata and not self._failed

    def __str__(self):
        if not self._listed:
            return 'listing VMs failed, nothing backed up' + \
                ('' if self._metadata else ', pool metadata missing')

        summary = '{} of {} VMs backed up'.format(
            len(self._succeeded), len(self._succeeded) + len(self._failed))
        if self._failed:
            summary += ', failed: ' + ', '.join(self._failed)
        if not self._metadata:
            summary += ', pool metadata missing'
        return summary


def BackupVm(client, vmUuid, destination, retain, date,
             log=syslog.syslog):
    '''Back up a single VM. Returns the VM name and whether it worked.'''
    try:
        vm = client.GetVm(vmUuid)
    except _STEP_ERRORS as e:
        log(syslog.LOG_ERR, f'Could not look up VM {vmUuid}: {e}')
        return vmUuid, False

    vm_name = vm.Name
    vm_dir = pathlib.Path(destination) / vm_name
    log(syslog.LOG_INFO, f"Backup for VM '{vm_name}' started")

    log(syslog.LOG_INFO, '\tPreparing VM for backup')
    try:
        snapshot_uuid = PrepareVm(client, vmUuid, vm=vm, log=log)
    except _STEP_ERRORS as e:
        log(syslog.LOG_ERR,
            f"Preparing VM '{vm_name}' failed, skipping it: {e}")
        return vm_name, False

    if snapshot_uuid:
        log(syslog.LOG_INFO, f'\tSnapshot UUID is {snapshot_uuid}')

    log(syslog.LOG_INFO, '\tStarting export to XVA')
    exported = ExportXva(client, snapshot_uuid or vmUuid, vm_dir,
                         ArchiveName(vm_name, date), log=log)

    if snapshot_uuid:
        log(syslog.LOG_INFO, '\tRemoving snapshot')
        try:
            DeleteSnapshot(client, snapshot_uuid)
        except _STEP_ERRORS as e:
            log(syslog.LOG_WARNING,
                f'Could not remove snapshot {snapshot_uuid}: {e}')

    if not exported:
        log(syslog.LOG_ERR, f"Backup for VM '{vm_name}' failed")
        return vm_name, False

    log(syslog.LOG_INFO,
        '\tRemoving expired backups outside retention period')
    try:
        RemoveRolledArchives(vm_name, vm_dir, log=log)
        PruneArchives(vm_name, vm_dir, retain, log=log)
    except OSError as e:
        log(syslog.LOG_WARNING,
            f"Could not remove expired backups of '{vm_name}': {e}")

    log(syslog.LOG_INFO, f"Backup for VM '{vm_name}' completed")
    return vm_name, True


def BackupPool(client, destination, retain=3, allVms=False, name=None,
               date=None, log=syslog.syslog) -> BackupResult:
    '''Back up the selected VMs one after another, then dump the pool
    metadata. A failing VM doesn't stop the run.'''
    if date is None:
        date = datetime.date.today()

    if allVms:
        log(syslog.LOG_INFO, 'Going to backup ALL Virtual Machines')
    elif name is not None:
        log(syslog.LOG_INFO, f"Going to backup Virtual Machine '{name}'")
    else:
        log(syslog.LOG_INFO, 'Going to backup all RUNNING Virtual Machines')

    result = BackupResult()

    try:
        vms = EnumerateVms(client, allVms=allVms, name=name)
    except _STEP_ERRORS as e:
        log(syslog.LOG_ERR, f'Could not list VMs: {e}')
        result.VmsListed = False
        vms = []

    for vm_uuid in vms:
        vm_name, ok = BackupVm(client, vm_uuid, destination, retain, date,
                               log=log)
        if ok:
            result.Succeeded.append(vm_name)
        else:
            result.Failed.append(vm_name)

    log(syslog.LOG_INFO, 'Dumping pool metadata')
    try:
        DumpPoolMetadata(client, destination, date, log=log)
        result.MetadataDumped = True
    except _STEP_ERRORS as e:
        log(syslog.LOG_ERR, f'Dumping pool metadata failed: {e}')

    return result
