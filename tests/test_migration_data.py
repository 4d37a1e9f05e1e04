import struct

import pytest

from migtd.migration import VMCALL_SERVICE_COMMON_GUID, MigrationError, MigrationResult
from migtd.migration_data import (
    COMMAND_HEADER_LENGTH,
    MIG_COMMAND_REPORT_STATUS,
    RESPONSE_HEADER_LENGTH,
    MigrationSessionKey,
    ServiceMigReportStatusCommand,
    ServiceMigReportStatusResponse,
    ServiceMigWaitForReqCommand,
    ServiceMigWaitForReqResponse,
    ServiceMigWaitForReqShutdown,
    ServiceQueryResponse,
    VmcallServiceCommand,
    VmcallServiceResponse,
)


def test_vmcallservicecommand_001():
    cmd = VmcallServiceCommand(COMMAND_HEADER_LENGTH, VMCALL_SERVICE_COMMON_GUID)
    assert cmd.to_bytes()[:16] == VMCALL_SERVICE_COMMON_GUID
    assert cmd.length == COMMAND_HEADER_LENGTH
    with pytest.raises(MigrationError) as info:
        cmd.write(bytes(1))
    assert info.value.result is MigrationResult.INVALID_PARAMETER


def test_vmcallservicecommand_002():
    with pytest.raises(MigrationError) as info:
        VmcallServiceCommand(COMMAND_HEADER_LENGTH - 1, VMCALL_SERVICE_COMMON_GUID)
    assert info.value.result is MigrationResult.INVALID_PARAMETER


def test_vmcallservicecommand_003():
    cmd = VmcallServiceCommand(COMMAND_HEADER_LENGTH + 1, VMCALL_SERVICE_COMMON_GUID)
    cmd.write(bytes(1))
    length = struct.unpack_from("<I", cmd.to_bytes(), 16)[0]
    assert length == COMMAND_HEADER_LENGTH + 1
    assert cmd.length == COMMAND_HEADER_LENGTH + 1


def test_vmcallservicecommand_write_places_data():
    cmd = VmcallServiceCommand(COMMAND_HEADER_LENGTH + 8, VMCALL_SERVICE_COMMON_GUID)
    cmd.write(b"abc")
    cmd.write(b"de")
    data = cmd.to_bytes()
    assert data[24:29] == b"abcde"
    assert cmd.length == COMMAND_HEADER_LENGTH + 5


def test_vmcallserviceresponse_001():
    rsp_mem = bytearray(RESPONSE_HEADER_LENGTH)
    VmcallServiceResponse.create(rsp_mem, VMCALL_SERVICE_COMMON_GUID)
    rsp = VmcallServiceResponse.try_read(bytes(rsp_mem))
    assert rsp is not None
    assert rsp.read_guid() == VMCALL_SERVICE_COMMON_GUID


def test_vmcallserviceresponse_002():
    rsp_mem = bytearray(RESPONSE_HEADER_LENGTH + 1)
    VmcallServiceResponse.create(rsp_mem, VMCALL_SERVICE_COMMON_GUID)
    rsp = VmcallServiceResponse.try_read(bytes(rsp_mem))
    assert rsp is not None
    assert rsp.read_guid() == VMCALL_SERVICE_COMMON_GUID
    assert rsp.read_status() == 0
    assert rsp.read_data(0, 1) == b"\x00"
    assert rsp.read_data(0, 2) is None


def test_vmcallserviceresponse_003():
    rsp_mem = bytearray(RESPONSE_HEADER_LENGTH - 1)
    with pytest.raises(MigrationError):
        VmcallServiceResponse.create(rsp_mem, VMCALL_SERVICE_COMMON_GUID)


def test_vmcallserviceresponse_004():
    assert VmcallServiceResponse.try_read(bytes(RESPONSE_HEADER_LENGTH - 1)) is None


def test_vmcallserviceresponse_005():
    data = bytearray(RESPONSE_HEADER_LENGTH)
    data[16:20] = (RESPONSE_HEADER_LENGTH - 1).to_bytes(4, "little")
    assert VmcallServiceResponse.try_read(bytes(data)) is None


def test_vmcallserviceresponse_006():
    data = bytearray(RESPONSE_HEADER_LENGTH)
    data[16:20] = (RESPONSE_HEADER_LENGTH + 1).to_bytes(4, "little")
    assert VmcallServiceResponse.try_read(bytes(data)) is None


def test_create_overwrites_buffer_and_sets_length():
    buf = bytearray(b"\xff" * 40)
    VmcallServiceResponse.create(buf, VMCALL_SERVICE_COMMON_GUID)
    assert buf[:16] == VMCALL_SERVICE_COMMON_GUID
    assert struct.unpack_from("<I", buf, 16)[0] == 40
    assert buf[20:] == bytes(20)


def test_query_response_round_trip():
    query = ServiceQueryResponse(0, 0, 0, 0, VMCALL_SERVICE_COMMON_GUID)
    data = query.to_bytes()
    assert len(data) == ServiceQueryResponse.SIZE
    assert ServiceQueryResponse.from_bytes(data) == query
    with pytest.raises(ValueError):
        ServiceQueryResponse.from_bytes(data[:-1])


def test_wait_for_request_command_bytes():
    assert ServiceMigWaitForReqCommand(version=0, command=1).to_bytes() == b"\x00\x01\x00\x00"
    assert ServiceMigWaitForReqShutdown().to_bytes() == bytes(4)


def test_report_status_command_layout():
    cmd = ServiceMigReportStatusCommand(operation=1, status=5, mig_request_id=0x0102030405060708)
    data = cmd.to_bytes()
    assert data[:4] == bytes([0, MIG_COMMAND_REPORT_STATUS, 1, 5])
    assert data[4:] == (0x0102030405060708).to_bytes(8, "little")


def test_wait_for_request_response_parse():
    rsp = ServiceMigWaitForReqResponse.from_bytes(bytes([0, 1, 1, 0]) + b"rest")
    assert rsp == ServiceMigWaitForReqResponse(0, 1, 1, 0)
    with pytest.raises(ValueError):
        ServiceMigWaitForReqResponse.from_bytes(b"\x00\x01")


def test_report_status_response_parse():
    rsp = ServiceMigReportStatusResponse.from_bytes(bytes([0, 2, 0, 0]))
    assert rsp.command == MIG_COMMAND_REPORT_STATUS


def test_session_key_round_trip_and_clear():
    key = MigrationSessionKey([1, 2, 3, 0xFFFF_FFFF_FFFF_FFFF])
    data = key.to_bytes()
    assert len(data) == MigrationSessionKey.SIZE
    assert MigrationSessionKey.from_bytes(data) == key
    key.clear()
    assert key.fields == [0, 0, 0, 0]
    assert key.to_bytes() == bytes(MigrationSessionKey.SIZE)