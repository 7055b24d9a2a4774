import os
import pytest


@pytest.fixture(scope="session")
def livy_url():
    return os.getenv("LIVY_URL")


@pytest.fixture(scope="session")
def livy_user():
    return os.getenv("LIVY_USER")


@pytest.fixture(scope="session")
def livy_password():
    return os.getenv("LIVY_PASSWORD")


@pytest.fixture(scope="session")
def connection_properties(livy_url, livy_user, livy_password):
    properties = {
        "zeppelin.livy.url": livy_url,
        "zeppelin.livy.session.create_timeout": os.getenv("LIVY_SESSION_CREATE_TIMEOUT", "300"),
        "zeppelin.livy.pull_status.interval.millis": "500",
    }
    if livy_user:
        properties["zeppelin.livy.username"] = livy_user
        properties["zeppelin.livy.password"] = livy_password or ""
    return properties
