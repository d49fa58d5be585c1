"""Integration tests for the listing queries, contact detail and delete."""

from __future__ import annotations

from pathlib import Path

import pytest

from castdir_etl.listing import (
    ListingRedirect,
    delete_contact,
    load_contact_detail,
    load_listing_config,
    run_listing,
)

PROJECT_ROOT = Path(__file__).parent.parent.parent


@pytest.fixture
def config():
    return load_listing_config(PROJECT_ROOT / "config" / "listings.yml")


def _seed_offices(conn, n: int) -> None:
    conn.execute("INSERT INTO users (id, display_name, slug) VALUES ('u1', 'Jo', 'jo')")
    for i in range(n):
        conn.execute(
            """
            INSERT INTO offices (id, display_name, slug, user_id, updated_at)
            VALUES (%s, %s, %s, 'u1', now() - %s::int * interval '1 day')
            """,
            (f"o{i:02d}", f"Office {i:02d}", f"office-{i:02d}", i),
        )
    conn.commit()


class TestRunListing:
    def test_first_page_sorted_by_updated_desc(self, db_conn, config):
        conn, _ = db_conn
        _seed_offices(conn, 30)
        result = run_listing(conn, "offices", {}, config)
        assert result.total_count == 30
        assert result.page_count == 2
        assert len(result.rows) == 25
        assert result.rows[0]["id"] == "o00"
        assert result.rows[0]["formatted_address"] == ""

    def test_second_page(self, db_conn, config):
        conn, _ = db_conn
        _seed_offices(conn, 30)
        result = run_listing(conn, "offices", {"page": "2"}, config)
        assert [r["id"] for r in result.rows] == [f"o{i:02d}" for i in range(25, 30)]

    def test_out_of_range_page_redirects(self, db_conn, config):
        conn, _ = db_conn
        _seed_offices(conn, 30)
        with pytest.raises(ListingRedirect) as exc:
            run_listing(conn, "offices", {"page": "9", "sortBy": "display_name"}, config)
        assert exc.value.location == "?page=2&sortBy=display_name"

    def test_disallowed_page_size_redirects(self, db_conn, config):
        conn, _ = db_conn
        _seed_offices(conn, 3)
        with pytest.raises(ListingRedirect) as exc:
            run_listing(conn, "offices", {"pageSize": "7"}, config)
        assert exc.value.location == "?page=1"

    def test_empty_table_page_one(self, db_conn, config):
        conn, _ = db_conn
        result = run_listing(conn, "offices", {}, config)
        assert result.rows == []
        assert result.current_page == 1
        assert result.page_count == 0

    def test_search_terms_and(self, db_conn, config):
        conn, _ = db_conn
        conn.execute("INSERT INTO users (id, display_name, slug) VALUES ('u1', 'Jo', 'jo')")
        for cid, first, last in [("c1", "Jo", "Doe"), ("c2", "Jo", "Smith"), ("c3", "Al", "Doe")]:
            conn.execute(
                "INSERT INTO contacts (id, display_name, slug, user_id, first_name, last_name) "
                "VALUES (%s, %s, %s, 'u1', %s, %s)",
                (cid, cid, cid, first, last),
            )
        conn.commit()
        result = run_listing(conn, "contacts", {"search": "JO doe"}, config)
        assert [r["id"] for r in result.rows] == ["c1"]
        assert result.search == "jo doe"

    def test_sort_asc_by_display_name(self, db_conn, config):
        conn, _ = db_conn
        _seed_offices(conn, 3)
        result = run_listing(conn, "offices", {"sortBy": "display_name", "sortOrder": "asc"}, config)
        assert [r["display_name"] for r in result.rows] == ["Office 00", "Office 01", "Office 02"]

    def test_offices_formatted_address_prefers_office_type(self, db_conn, config):
        conn, _ = db_conn
        _seed_offices(conn, 1)
        home = conn.execute(
            "INSERT INTO addresses (street1, city, state, address_type) "
            "VALUES ('9 Home St', 'Van Nuys', 'CA', 'Home') RETURNING id"
        ).fetchone()[0]
        office = conn.execute(
            "INSERT INTO addresses (street1, street2, city, state, zip, address_type) "
            "VALUES ('1 Lot Rd', 'Ste 2', 'Burbank', 'CA', '91505', 'Office') RETURNING id"
        ).fetchone()[0]
        for address_id in (home, office):
            conn.execute(
                "INSERT INTO office_addresses (office_id, address_id) VALUES ('o00', %s)",
                (address_id,),
            )
        conn.commit()
        result = run_listing(conn, "offices", {}, config)
        assert result.rows[0]["formatted_address"] == "1 Lot Rd Ste 2, Burbank CA 91505"


class TestContactDetail:
    def _seed(self, conn) -> None:
        conn.execute("INSERT INTO users (id, display_name, slug) VALUES ('u1', 'Jo', 'jo')")
        conn.execute(
            "INSERT INTO contacts (id, display_name, slug, user_id) VALUES ('c1', 'Jo', 'jo', 'u1')"
        )
        address_id = conn.execute(
            "INSERT INTO addresses (city, state) VALUES ('Burbank', 'CA') RETURNING id"
        ).fetchone()[0]
        link_id = conn.execute(
            "INSERT INTO links (platform_name, profile_name, profile_link) "
            "VALUES ('IMDb', 'jo', 'https://imdb.com/jo') RETURNING id"
        ).fetchone()[0]
        conn.execute(
            "INSERT INTO contact_addresses (contact_id, address_id) VALUES ('c1', %s)", (address_id,)
        )
        conn.execute(
            "INSERT INTO contact_links (contact_id, link_id) VALUES ('c1', %s)", (link_id,)
        )
        conn.commit()

    def test_detail_nested(self, db_conn):
        conn, _ = db_conn
        self._seed(conn)
        contact = load_contact_detail(conn, "c1")
        assert contact["display_name"] == "Jo"
        assert [a["city"] for a in contact["addresses"]] == ["Burbank"]
        assert [lk["platform_name"] for lk in contact["links"]] == ["IMDb"]

    def test_detail_missing(self, db_conn):
        conn, _ = db_conn
        assert load_contact_detail(conn, "nope") is None

    def test_delete_removes_junctions_first(self, db_conn):
        conn, _ = db_conn
        self._seed(conn)
        assert delete_contact(conn, "c1") is True
        conn.commit()
        assert conn.execute("SELECT count(*) FROM contact_addresses").fetchone()[0] == 0
        assert conn.execute("SELECT count(*) FROM contacts").fetchone()[0] == 0
        # Shared address rows stay.
        assert conn.execute("SELECT count(*) FROM addresses").fetchone()[0] == 1

    def test_delete_missing(self, db_conn):
        conn, _ = db_conn
        assert delete_contact(conn, "nope") is False
