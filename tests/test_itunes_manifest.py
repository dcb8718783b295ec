import plistlib

from itunes_manifest import BackupManifest, ManifestParser, discover


def test_discover_skips_incomplete_backups(tmp_path, backup_builder):
    backup_builder.add_file("Documents/readme.txt", b"hi")
    backup_builder.build()

    stale = tmp_path / "stale"
    stale.mkdir()
    (stale / "Info.plist").write_bytes(b"garbage")
    (stale / "Manifest.plist").write_bytes(b"garbage")
    (stale / "Manifest.db").write_bytes(b"")
    (tmp_path / "partial").mkdir()
    (tmp_path / "not-a-dir.txt").write_text("x")

    backups = discover(str(tmp_path))
    assert [b.path for b in backups] == [str(backup_builder.root)]
    backup = backups[0]
    assert backup.device_name == "Test iPhone"
    assert backup.backup_time == "2021-05-01 12:30"
    assert backup.ios_version == "14.5"
    assert backup.version_label() == "12.11.3"
    assert not backup.encrypted


def test_parse_single_backup_directory(backup_builder):
    backup_builder.encrypted = True
    path = backup_builder.build()
    backups = ManifestParser(path).parse()
    assert len(backups) == 1
    assert backups[0].encrypted


def test_missing_display_name_is_skipped(tmp_path, backup_builder):
    del backup_builder.info["Display Name"]
    backup_builder.build()
    parser = ManifestParser(str(tmp_path))
    assert parser.parse() == []
    assert "Incomplete" in parser.last_error


def test_mbdb_backup_is_recognized(tmp_path, backup_builder):
    backup_builder.build(mbdb=True)
    assert len(discover(str(tmp_path))) == 1


def test_manifest_equality_and_validity():
    a = BackupManifest("/b/1", "dev", "Phone", "2021-01-01 10:00")
    b = BackupManifest("/b/1", "other", "", "")
    assert a == b
    assert a.is_valid()
    assert not b.is_valid()
    assert BackupManifest("/b/2", macos_version="11.2").version_label() == "Embedded iTunes on macOS 11.2"
    assert "Phone [2021-01-01 10:00] (/b/1)" in str(a)


def test_encrypted_flag_read_from_manifest_plist(tmp_path, backup_builder):
    path = backup_builder.build()
    with open(tmp_path / "backup" / "Manifest.plist", "wb") as fh:
        plistlib.dump({"IsEncrypted": True}, fh)
    assert ManifestParser.parse_backup(path).encrypted
