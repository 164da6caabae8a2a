import json

from mongodoc import DatabaseSettings, MongoConfig, load_config
from mongodoc.config import save_config


def test_config_defaults_when_missing(tmp_path):
    config = load_config(str(tmp_path / "missing.toml"))
    assert isinstance(config, MongoConfig)
    assert config.get().server == "mongodb://localhost:27017"
    assert config.get("other") is None


def test_config_from_toml(tmp_path):
    path = tmp_path / "mongodoc.toml"
    path.write_text(
        '[databases.default]\n'
        'database = "app"\n'
        'profiling = true\n'
        '\n'
        '[databases.archive]\n'
        'server = "mongodb://archive:27017"\n'
        'database = "old"\n'
        '[databases.archive.options]\n'
        'connectTimeoutMS = 500\n',
        encoding="utf-8",
    )
    config = load_config(str(path))
    assert config.get().database == "app"
    assert config.get().profiling
    archive = config.get("archive")
    assert archive.server == "mongodb://archive:27017"
    assert archive.options == {"connectTimeoutMS": 500}


def test_config_from_json(tmp_path):
    path = tmp_path / "mongodoc.json"
    path.write_text(json.dumps({"databases": {"default": {"database": "json_db"}}, "debug_mode": True}),
                    encoding="utf-8")
    config = load_config(str(path))
    assert config.debug_mode
    assert config.get().database == "json_db"


def test_save_config(tmp_path):
    """Test that a saved config can be read back."""
    path = tmp_path / "nested" / "config.json"
    config = MongoConfig(databases={"default": DatabaseSettings(database="saved")})
    save_config(config, str(path))
    assert load_config(str(path)).get().database == "saved"


def test_setup_logging_writes_file(tmp_path):
    from loguru import logger
    from mongodoc import setup_logging

    setup_logging(debug_mode=True, log_dir=str(tmp_path / "logs"))
    logger.debug("file sink check")
    assert list((tmp_path / "logs").glob("mongodoc_*.log"))
    setup_logging()


def test_profile_log_receives_profiled_commands(tmp_path, mock_mongo_client):
    from mongodoc import Database, setup_logging

    path = tmp_path / "profile.log"
    setup_logging(profile_log=str(path))
    db = Database('default', DatabaseSettings(database='profiled', profiling=True), client=mock_mongo_client)
    db.insert('things', {'a': 1})
    db.find_one('things', {'a': 1})
    setup_logging()

    text = path.read_text(encoding="utf-8")
    assert 'db.things.findOne({"a": 1})' in text
    assert 'profiled' in text
    assert 'Logging initialized' not in text
