# SPDX-License-Identifier: BSD-2-Clause

import datetime
import sys
import syslog

_LEVELS = {
    'emerg': syslog.LOG_EMERG,
    'alert': syslog.LOG_ALERT,
    'crit': syslog.LOG_CRIT,
    'err': syslog.LOG_ERR,
    'error': syslog.LOG_ERR,
    'warning': syslog.LOG_WARNING,
    'notice': syslog.LOG_NOTICE,
    'info': syslog.LOG_INFO,
    'debug': syslog.LOG_DEBUG,
}


def ParseLevel(value):
    '''Turn "debug", "7" etc. into a syslog priority.'''
    value = value.strip().lower()
    if value in _LEVELS:
        return _LEVELS[value]

    level = int(value)
    if not syslog.LOG_EMERG <= level <= syslog.LOG_DEBUG:
        raise ValueError(f'invalid level: {value}')
    return level


class Reporter:
    '''Log to syslog and echo timestamped lines to a stream.

    Messages less important than `level` are dropped. With `quiet` set,
    nothing is echoed.'''
    def __init__(self, level=syslog.LOG_INFO, quiet=False, stream=None):
        self._level = level
        self._quiet = quiet
        self._stream = stream

    @property
    def Level(self):
        return self._level

    def __call__(self, priority, message):
        if priority > self._level:
            return

        syslog.syslog(priority, message)

        if not self._quiet:
            stream = self._stream or sys.stdout
            now = datetime.datetime.now()
            for line in message.splitlines():
                print(f'{now:%Y-%m-%d %H:%M:%S} {line}', file=stream)
            stream.flush()
