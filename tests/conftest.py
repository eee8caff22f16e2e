import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from querydb.api.endpoints.datasources import get_manager
from querydb.core.config import DataSourceConfig
from querydb.core.datasource import DatabaseManager
from querydb.main import create_app


GET_PEOPLE_SQL = """select id, first_name, last_name, age from people
where 1 = 1
-- age_min -- and age >= :age_min
-- age_max -- and age <= :age_max
-- ids -- and id in (:ids)
-- age is null -- and age is null
order by
-- sort:age desc -- age desc,
id
"""

INSERT_PERSON_SQL = """insert into people
(
first_name
, last_name
-- age -- , age
)
values
(
:first_name
, :last_name
-- age -- , :age
)
"""


def write_file(root, name, text):
    path = root / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


# Query files shared by the tests
@pytest.fixture
def queries_dir(tmp_path):
    root = tmp_path / "queries"
    write_file(
        root,
        "create_people.sql",
        "create table people (id integer primary key, first_name text, last_name text, age integer)",
    )
    write_file(root, "insert_person.sql", INSERT_PERSON_SQL)
    write_file(root, "get_people.sql", GET_PEOPLE_SQL)
    write_file(root, "count_people.sql", "select count(*) as total from people")
    write_file(root, "get_age.sql", "select age from people where first_name = :first_name")
    write_file(root, "get_by_name_simple.sql", "select first_name from people where first_name = ?")
    return root


@pytest.fixture
def write_query(queries_dir):
    def write(name, text):
        return write_file(queries_dir, name, text)

    return write


@pytest.fixture
def datasource_config(tmp_path, queries_dir):
    return DataSourceConfig(
        name="main",
        url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        queries_path=str(queries_dir),
        is_default=True,
    )


# Fresh caches and connections for every test
@pytest_asyncio.fixture(scope="function")
async def manager(datasource_config):
    manager = DatabaseManager()
    manager.register(datasource_config)
    yield manager
    await manager.dispose()


@pytest_asyncio.fixture(scope="function")
async def datasource(manager):
    ds = manager.get("main")
    await ds.execute("create_people.sql")
    return ds


@pytest_asyncio.fixture(scope="function")
async def people(datasource):
    for first, last, age in [("Ada", "Lovelace", 36), ("Alan", "Turing", 41), ("Grace", "Hopper", None)]:
        args = {"first_name": first, "last_name": last}
        if age is not None:
            args["age"] = age
        await datasource.execute("insert_person.sql", args)
    return datasource


# Client
@pytest_asyncio.fixture(scope="function")
async def client(manager):
    app = create_app()
    app.state.manager = manager
    app.dependency_overrides[get_manager] = lambda: manager

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
