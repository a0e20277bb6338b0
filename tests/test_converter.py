import pytest

from drafteam.converter import build_command, parse_progress, parse_stats
from drafteam.state import ConversionStats, JobSpec


def _spec(plan_type="key-plan"):
    return JobSpec(
        id="abc",
        input_file_path="/in/site.osm",
        original_filename="site.osm",
        projection="EPSG:2154",
        plan_type=plan_type,
    )


def test_build_command_for_key_plan():
    command = build_command(_spec(), "/out/abc_output.dxf", "python3", "/opt/osm_to_dxf.py")
    assert command == [
        "python3", "/opt/osm_to_dxf.py",
        "--input", "/in/site.osm",
        "--output", "/out/abc_output.dxf",
        "--projection", "EPSG:2154",
    ]


def test_build_command_adds_detailed_for_location_plan():
    command = build_command(_spec("location-plan"), "/out/abc_output.dxf", "python3", "/opt/osm_to_dxf.py")
    assert command[-1] == "--detailed"


@pytest.mark.parametrize(
    "line, expected",
    [
        ("Processing nodes...", (30, "Processing OSM nodes...")),
        ("[info] Processing ways", (60, "Processing OSM ways...")),
        ("Generating DXF output", (80, "Generating DXF file...")),
        ('{"progress": 42, "message": "Clipping"}', (42, "Clipping")),
        ('{"progress": 55}', (55, None)),
        ("Reading input file", None),
        ('{"stats": {"nodes": 1}}', None),
        ('{"progress": "soon"}', None),
        ("{not json", None),
        ('{"progress": NaN}', None),
        ('{"progress": Infinity, "message": "Almost"}', None),
        ('{"progress": true}', None),
    ],
)
def test_parse_progress(line, expected):
    assert parse_progress(line) == expected


def test_parse_stats_from_summary_lines():
    stdout = "Processed 120 nodes\nProcessed 45 ways\nWriting\n7 layers created\n"
    assert parse_stats(stdout) == ConversionStats(nodes=120, ways=45, layers=7)


def test_parse_stats_defaults_missing_counts_to_zero():
    assert parse_stats("Processed 12 nodes") == ConversionStats(nodes=12, ways=0, layers=0)
    assert parse_stats("") == ConversionStats()


def test_structured_stats_override_summary_lines():
    stdout = 'Processed 10 nodes\n{"stats": {"nodes": 11, "layers": 2}}'
    assert parse_stats(stdout) == ConversionStats(nodes=11, ways=0, layers=2)


def test_structured_stats_ignore_unusable_counts():
    stdout = 'Processed 10 nodes\n{"stats": {"nodes": "many", "ways": NaN, "layers": 4}}'
    assert parse_stats(stdout) == ConversionStats(nodes=10, ways=0, layers=4)
