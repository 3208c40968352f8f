import pytest

from geoface_attendance.capture import OpenCVCaptureDevice
from geoface_attendance.exceptions import CaptureError, LocationUnavailable
from geoface_attendance.location import StaticPositionProvider


class TestOpenCVCaptureDevice:
    @pytest.mark.asyncio
    async def test_invalid_source_raises_capture_error(self, tmp_path):
        device = OpenCVCaptureDevice(str(tmp_path / "missing.mp4"))

        with pytest.raises(CaptureError) as excinfo:
            await device.open()

        assert excinfo.value.context["device"] == str(tmp_path / "missing.mp4")
        assert device.is_open is False

    @pytest.mark.asyncio
    async def test_read_before_open_raises_capture_error(self):
        device = OpenCVCaptureDevice(0)

        with pytest.raises(CaptureError):
            await device.read()

    @pytest.mark.asyncio
    async def test_close_without_open_is_harmless(self):
        device = OpenCVCaptureDevice(0)

        await device.close()
        await device.close()

        assert device.is_open is False


class TestStaticPositionProvider:
    @pytest.mark.asyncio
    async def test_reports_configured_position(self):
        provider = StaticPositionProvider(51.5007, -0.1246, accuracy=8.0)

        position = await provider.current_position()

        assert (position.latitude, position.longitude, position.accuracy) == (51.5007, -0.1246, 8.0)
        assert position.timestamp.tzinfo is not None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("latitude,longitude", [(None, None), (51.5007, None), (None, -0.1246)])
    async def test_missing_coordinates_report_no_signal(self, latitude, longitude):
        provider = StaticPositionProvider(latitude, longitude)

        with pytest.raises(LocationUnavailable) as excinfo:
            await provider.current_position()

        assert excinfo.value.context["cause"] == "no_signal"
