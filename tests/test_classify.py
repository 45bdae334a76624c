import hashlib, os
from aitcore.checksums import ChecksumTable
from aitcore.classify import Classification, walk_tree, classify, summarize
from aitcore.metadata import Kind, MetadataStore, PathRecord


def _h(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _setup(root):
    (root / "etc").mkdir()
    (root / "etc" / "config").write_bytes(b"new contents")
    (root / "etc" / "hosts").write_bytes(b"127.0.0.1 localhost\n")
    (root / "etc" / "added.xml").write_bytes(b"<x/>")
    (root / "lib").mkdir()
    os.symlink("../etc/hosts", root / "lib" / "hosts")
    (root / ".repack_info").mkdir()
    (root / ".repack_info" / "fs-config.txt").write_text("")
    store = MetadataStore([
        PathRecord('/', Kind.DIRECTORY, 0, 0, 0o755),
        PathRecord('/etc', Kind.DIRECTORY, 0, 0, 0o755),
        PathRecord('/etc/config', Kind.FILE, 0, 0, 0o644),
        PathRecord('/etc/hosts', Kind.FILE, 0, 0, 0o644),
        PathRecord('/etc/gone', Kind.FILE, 0, 0, 0o644),
        PathRecord('/lib', Kind.FILE, 0, 0, 0o644),
    ])
    sums = ChecksumTable({
        '/etc/config': _h(b"old contents"),
        '/etc/hosts': _h(b"127.0.0.1 localhost\n"),
        '/etc/gone': _h(b"x"),
        '/lib': _h(b"y"),
    })
    return store, sums


def test_walk_tree_excludes_info_dir_and_orders_parents_first(tmp_path):
    _setup(tmp_path)
    tree = walk_tree(str(tmp_path))
    paths = [p for p, _ in tree]
    assert paths[0] == '/'
    assert '/.repack_info' not in tree
    assert tree.entries['/lib/hosts'] is Kind.SYMLINK
    assert paths.index('/etc') < paths.index('/etc/config')
    assert tree.full('/etc/hosts') == os.path.join(str(tmp_path), 'etc', 'hosts')


def test_classify_every_path_exactly_once(tmp_path):
    store, sums = _setup(tmp_path)
    tree = walk_tree(str(tmp_path))
    result = classify(tree, store, sums, workers=2)
    assert list(result) == [p for p, _ in tree]
    assert result['/'] is Classification.UNCHANGED
    assert result['/etc'] is Classification.UNCHANGED
    assert result['/etc/config'] is Classification.MODIFIED
    assert result['/etc/hosts'] is Classification.UNCHANGED
    assert result['/etc/added.xml'] is Classification.NEW
    # a stored regular file that is now a directory is new
    assert result['/lib'] is Classification.NEW
    assert result['/lib/hosts'] is Classification.NEW


def test_classify_is_order_independent(tmp_path):
    store, sums = _setup(tmp_path)
    tree = walk_tree(str(tmp_path))
    a = classify(tree, store, sums, workers=1)
    b = classify(tree, store, sums, workers=8)
    assert a == b


def test_summarize_reports_removed(tmp_path):
    store, sums = _setup(tmp_path)
    result = classify(walk_tree(str(tmp_path)), store, sums)
    summary = summarize(result, store)
    assert summary.modified == ['/etc/config']
    assert '/etc/added.xml' in summary.new
    assert summary.removed == ['/etc/gone']
    assert summary.counts()['removed'] == 1
    assert '1 modified' in summary.describe()
