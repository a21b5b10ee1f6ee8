import asyncio
import datetime
import functools
import io
import os
import pathlib
import sys
import threading
from collections import defaultdict
from typing import (
    Any,
    Callable,
    Dict,
    TypeVar,
)

import msgspec

from ringwarden.logging.config.logging_config import LoggingConfig
from ringwarden.logging.config.stream_type import StreamType
from ringwarden.logging.models import Entry, Log

from .protocol import LoggerProtocol

T = TypeVar('T', bound=Entry)


DEFAULT_TEMPLATE = "{timestamp} - {level} - {thread_id} - {filename}:{function_name}.{line_number} - {message}"
ERROR_TEMPLATE = "{timestamp} - {level} - {thread_id}.{filename}:{function_name}.{line_number} - {error}"


class LoggerStream:
    def __init__(
        self,
        name: str | None = None,
        template: str | None = None,
        filename: str | None = None,
        directory: str | None = None,
    ) -> None:
        if name is None:
            name = "default"

        self._name = name
        self._default_template = template
        self._default_logfile = filename
        self._default_log_directory = directory

        self._init_lock = asyncio.Lock()
        self._stream_writers: Dict[StreamType, asyncio.StreamWriter] = {}
        self._loop: asyncio.AbstractEventLoop | None = None

        self._files: Dict[str, io.BufferedRandom] = {}
        self._file_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._cwd: str | None = None
        self._default_logfile_path: str | None = None

        self._config = LoggingConfig()
        self._initialized: bool = False
        self._stderr: io.TextIOBase | None = None
        self._stdout: io.TextIOBase | None = None


    @property
    def name(self):
        return self._name

    async def initialize(
        self,
        stdout_writer: asyncio.StreamWriter | None = None,
        stderr_writer: asyncio.StreamWriter | None = None,
    ):
        async with self._init_lock:

            if self._initialized:
                return

            if self._loop is None:
                self._loop = asyncio.get_running_loop()

            if stdout_writer:
                self._stream_writers[StreamType.STDOUT] = stdout_writer

            if stderr_writer:
                self._stream_writers[StreamType.STDERR] = stderr_writer

            if self._stream_writers.get(StreamType.STDOUT) is None:
                self._stdout = await self._dup_stream(sys.stdout)
                self._stream_writers[StreamType.STDOUT] = await self._create_writer(
                    self._stdout,
                )

            if self._stream_writers.get(StreamType.STDERR) is None:
                self._stderr = await self._dup_stream(sys.stderr)
                self._stream_writers[StreamType.STDERR] = await self._create_writer(
                    self._stderr,
                )

            self._initialized = True

    async def _create_writer(self, pipe: io.TextIOBase):
        transport, protocol = await self._loop.connect_write_pipe(
            lambda: LoggerProtocol(),
            pipe,
        )

        return asyncio.StreamWriter(
            transport,
            protocol,
            None,
            self._loop,
        )

    async def _dup_stream(self, stream: io.TextIOBase):
        fileno = await self._loop.run_in_executor(
            None,
            stream.fileno,
        )

        duplicate = await self._loop.run_in_executor(
            None,
            os.dup,
            fileno,
        )

        return await self._loop.run_in_executor(
            None,
            functools.partial(
                os.fdopen,
                duplicate,
                mode=stream.mode,
            )
        )

    async def open_file(
        self,
        filename: str,
        directory: str | None = None,
        is_default: bool = False,
    ):
        if self._loop is None:
            self._loop = asyncio.get_running_loop()

        if self._cwd is None:
            self._cwd = await self._loop.run_in_executor(
                None,
                os.getcwd,
            )

        logfile_path = self._to_logfile_path(filename, directory=directory)

        async with self._file_locks[logfile_path]:
            await self._loop.run_in_executor(
                None,
                self._open_file,
                logfile_path,
            )

        if is_default:
            self._default_logfile_path = logfile_path

        return logfile_path

    def _open_file(
        self,
        logfile_path: str,
    ):
        if (
            logfile := self._files.get(logfile_path)
        ) and logfile.closed is False:
            return

        resolved_path = pathlib.Path(logfile_path).absolute().resolve()
        logfile_directory = str(resolved_path.parent)

        if not os.path.exists(logfile_directory):
            os.makedirs(logfile_directory)

        if not os.path.exists(resolved_path):
            resolved_path.touch()

        self._files[logfile_path] = open(str(resolved_path), "ab+")

    async def close(self):
        await asyncio.gather(
            *[self._close_file(logfile_path) for logfile_path in list(self._files)]
        )

        await asyncio.gather(
            *[
                writer.drain()
                for writer in self._stream_writers.values()
                if not writer.is_closing()
            ]
        )

        self._initialized = False

    async def _close_file(self, logfile_path: str):
        async with self._file_locks[logfile_path]:
            await self._loop.run_in_executor(
                None,
                self._close_file_at_path,
                logfile_path,
            )

    def _close_file_at_path(self, logfile_path: str):
        if (
            logfile := self._files.pop(logfile_path, None)
        ) and logfile.closed is False:
            logfile.close()

    def _to_logfile_path(
        self,
        filename: str,
        directory: str | None = None,
    ):
        filename_path = pathlib.Path(filename)

        if filename_path.suffix != ".json":
            raise ValueError(
                f"Log file {filename} must be a .json file."
            )

        if directory is None and self._config.directory:
            directory = self._config.directory

        elif directory is None:
            directory = self._cwd

        return os.path.join(directory, filename_path)

    async def log(
        self,
        entry: T | Log[T],
        template: str | None = None,
        path: str | None = None,
        filter: Callable[[T], bool] | None = None,
    ):
        filename: str | None = None
        directory: str | None = None

        if path:
            logfile_path = pathlib.Path(path)
            is_logfile = len(logfile_path.suffix) > 0

            filename = logfile_path.name if is_logfile else None
            directory = str(logfile_path.parent.absolute()) if is_logfile else str(logfile_path.absolute())

        if template is None:
            template = self._default_template

        if filename is None:
            filename = self._default_logfile

        if directory is None:
            directory = self._default_log_directory

        if filename or directory:
            await self._log_to_file(
                entry,
                filename=filename,
                directory=directory,
                filter=filter,
            )

        else:
            await self._log(
                entry,
                template=template,
                filter=filter,
            )

    async def _log(
        self,
        entry_or_log: T | Log[T],
        template: str | None = None,
        filter: Callable[[T], bool] | None = None,
    ):
        if isinstance(entry_or_log, Log):
            entry = entry_or_log.entry

        else:
            entry = entry_or_log

        if self._config.enabled(self._name, entry.level) is False:
            return

        if filter and filter(entry) is False:
            return

        if self._initialized is False:
            await self.initialize()

        stream_writer = self._stream_writers[self._config.output]

        if stream_writer.is_closing():
            return

        if template is None:
            template = DEFAULT_TEMPLATE

        if isinstance(entry_or_log, Log):
            log_file = entry_or_log.filename
            line_number = entry_or_log.line_number
            function_name = entry_or_log.function_name

        else:
            log_file, line_number, function_name = self._find_caller()

        context = {
            "filename": log_file,
            "function_name": function_name,
            "line_number": line_number,
            "thread_id": threading.get_native_id(),
            "timestamp": datetime.datetime.now(datetime.UTC).isoformat(),
        }

        try:
            stream_writer.write(
                entry.to_template(
                    template,
                    context=context,
                ).encode()
                + b"\n"
            )

            await stream_writer.drain()

        except (OSError, KeyError, ValueError) as err:
            await self._write_error(entry, err, context)

    async def _log_to_file(
        self,
        entry_or_log: T | Log[T],
        filename: str | None = None,
        directory: str | None = None,
        filter: Callable[[T], bool] | None = None,
    ):
        if isinstance(entry_or_log, Log):
            entry = entry_or_log.entry

        else:
            entry = entry_or_log

        if self._config.enabled(self._name, entry.level) is False:
            return

        if filter and filter(entry) is False:
            return

        if self._loop is None:
            self._loop = asyncio.get_running_loop()

        if self._cwd is None:
            self._cwd = await self._loop.run_in_executor(
                None,
                os.getcwd,
            )

        if filename is None:
            filename = "events.json"

        logfile_path = self._to_logfile_path(
            filename,
            directory=directory,
        )

        if self._files.get(logfile_path) is None or self._files[logfile_path].closed:
            await self.open_file(
                filename,
                directory=directory,
            )

        if isinstance(entry_or_log, Log):
            log = entry_or_log

        else:
            log_file, line_number, function_name = self._find_caller()

            log = Log(
                entry=entry,
                filename=log_file,
                function_name=function_name,
                line_number=line_number
            )

        try:
            async with self._file_locks[logfile_path]:
                await self._loop.run_in_executor(
                    None,
                    self._write_to_file,
                    log,
                    logfile_path,
                )

        except OSError as err:
            await self._write_error(
                entry,
                err,
                {
                    "filename": log.filename,
                    "function_name": log.function_name,
                    "line_number": log.line_number,
                    "thread_id": log.thread_id,
                    "timestamp": log.timestamp,
                },
            )

    async def _write_error(
        self,
        entry: Entry,
        err: Exception,
        context: Dict[str, Any],
    ):
        stderr_writer = self._stream_writers.get(StreamType.STDERR)
        if stderr_writer is None or stderr_writer.is_closing():
            return

        stderr_writer.write(
            entry.to_template(
                ERROR_TEMPLATE,
                context={
                    **context,
                    "error": str(err),
                },
            ).encode()
            + b"\n"
        )

        await stderr_writer.drain()

    def _write_to_file(
        self,
        log: Log,
        logfile_path: str,
    ):
        if (
            logfile := self._files.get(logfile_path)
        ) and (
            logfile.closed is False
        ):
            logfile.write(msgspec.json.encode(log) + b"\n")
            logfile.flush()

    def _find_caller(self):
        """
        Find the stack frame of the caller so that we can note the source
        file name, line number and function name.
        """
        frame = sys._getframe(3)
        code = frame.f_code

        return (
            code.co_filename,
            frame.f_lineno,
            code.co_name,
        )
