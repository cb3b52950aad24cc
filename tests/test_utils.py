from inventory.utils import calculate_eta, calculate_progress, format_bytes, format_eta, format_speed


def test_format_bytes():
    assert format_bytes(0) == "0 B"
    assert format_bytes(512) == "512 B"
    assert format_bytes(1536) == "1.5 KB"
    assert format_bytes(6 * 1024 ** 3) == "6 GB"


def test_format_speed_and_eta():
    assert format_speed(None) == "0 B/s"
    assert format_speed(2 * 1024 ** 2) == "2 MB/s"
    assert format_eta(None) == "calculating..."
    assert format_eta(42) == "42s"
    assert format_eta(125) == "2m 5s"
    assert format_eta(3 * 3600 + 120) == "3h 2m"


def test_progress_and_eta():
    assert calculate_progress(1, 3) == 33
    assert calculate_progress(5, 0) == 0
    assert calculate_progress(200, 100) == 100
    assert calculate_eta(100, 1000, 300) == 3
    assert calculate_eta(1000, 1000, 300) == 0
    assert calculate_eta(0, None, 300) is None
