import tempfile
import unittest
from pathlib import Path

from curricore.core.pedagogy import ProjectGraph
from knowledge_store.storage import InMemoryProjectGraphStore, ProjectGraphStore, SQLiteProjectGraphStore
from tests.mocks.payloads import make_concept, prerequisite


def _graph(*source_ids: str) -> ProjectGraph:
    return ProjectGraph(
        project_id="proj",
        concepts=[make_concept("caching", "Caching"), make_concept("lru", "LRU")],
        relationships=[prerequisite("caching", "lru", 0.8)],
        source_ids=list(source_ids),
    )


class SQLiteProjectGraphStoreTests(unittest.TestCase):
    def test_creates_parent_directory_and_round_trips(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "nested" / "graphs.sqlite"
            store = SQLiteProjectGraphStore(db_path)

            self.assertIsNone(store.load("proj"))
            self.assertEqual(store.revision("proj"), 0)

            store.save(_graph("s1"))
            store.save(_graph("s1", "s2"))
            loaded = store.load("proj")

            self.assertTrue(db_path.exists())
            self.assertEqual([concept.id for concept in loaded.concepts], ["caching", "lru"])
            self.assertEqual(loaded.relationships[0].strength, 0.8)
            self.assertEqual(store.revision("proj"), 2)
            self.assertEqual(sorted(store.source_ids("proj")), ["s1", "s2"])
            self.assertIsInstance(store, ProjectGraphStore)


class InMemoryProjectGraphStoreTests(unittest.TestCase):
    def test_saved_graphs_are_isolated_copies(self) -> None:
        store = InMemoryProjectGraphStore()
        graph = _graph("s1")
        store.save(graph)
        graph.concepts.clear()

        loaded = store.load("proj")
        self.assertEqual(len(loaded.concepts), 2)
        loaded.concepts.clear()
        self.assertEqual(len(store.load("proj").concepts), 2)
        self.assertEqual(store.project_ids(), ["proj"])
        self.assertIsNone(store.load("other"))


if __name__ == "__main__":
    unittest.main()
