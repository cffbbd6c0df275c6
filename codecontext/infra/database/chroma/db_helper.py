import chromadb
from typing import Optional, Dict, Any, List, Literal

from codecontext.config import get_config_manager
from codecontext.core.exceptions import CollectionNotFound, DatabaseConnectionError, RetrievalError
from codecontext.infra.database.errors import classify_database_error, is_already_exists
from codecontext.infra.logging import get_logger

# 定义允许的include字段类型
# 注意：ChromaDB API 使用 "metadatas"（复数形式），这是官方 API 的正确字段名
IncludeField = Literal["documents", "embeddings", "metadatas", "distances", "uris", "data"]

# 类型别名，用于避免拼写检查问题
MetadataList = List[Dict[str, Any]]  # 元数据列表类型

logger = get_logger(__name__)


class ChromaDBHelper:
    """ChromaDB 数据库助手类

    负责管理 ChromaDB 连接、集合缓存与集合内数据读写；所有方法均为同步调用，
    异步层通过 asyncio.to_thread 调度。厂商异常统一包装为检索异常后抛出。
    """

    def __init__(self, config_manager=None, client: Optional[chromadb.ClientAPI] = None):
        """初始化 ChromaDB 助手

        Args:
            config_manager: 配置管理器实例，如果为 None 则使用默认配置
            client: 预先构建的客户端（如测试中使用的 EphemeralClient），提供时不再按配置建连
        """
        self.config_manager = config_manager or get_config_manager()
        self._client: Optional[chromadb.ClientAPI] = client
        self._collections_cache: Dict[str, chromadb.Collection] = {}

    def _get_connection_config(self) -> Dict[str, Any]:
        """获取数据库连接配置

        Returns:
            包含 host、port、path、ssl、token 的配置字典

        Raises:
            DatabaseConnectionError: 当配置不完整时抛出
        """
        config = self.config_manager.get_database_config("chromadb")
        host = config.get("host")
        port = config.get("port")
        path = config.get("path") or ""

        if not path and (not host or not port):
            raise DatabaseConnectionError(
                "向量数据库配置不完整，缺少 host/port 或本地 path", operation="connect", target="chromadb"
            )

        return {
            "host": host,
            "port": int(port) if port else None,
            "path": path,
            "ssl": bool(config.get("ssl", False)),
            "token": config.get("token") or None,
        }

    def connect(self) -> chromadb.ClientAPI:
        """建立数据库连接

        配置了 path 时使用本地持久化客户端，否则使用 HTTP 客户端；token 以 Bearer 头发送。

        Returns:
            ChromaDB 客户端 API 实例

        Raises:
            DatabaseConnectionError: 连接失败时抛出
        """
        if self._client is not None:
            return self._client

        config = self._get_connection_config()
        try:
            if config["path"]:
                client = chromadb.PersistentClient(path=config["path"])
            else:
                headers = {"Authorization": f"Bearer {config['token']}"} if config["token"] else None
                client = chromadb.HttpClient(
                    host=config["host"],
                    port=config["port"],
                    ssl=config["ssl"],
                    headers=headers,
                )
                # 验证连接
                client.heartbeat()
        except Exception as e:
            raise DatabaseConnectionError(
                f"无法连接到 ChromaDB: {str(e)}", operation="connect", target="chromadb"
            ) from e

        location = config["path"] or f"{config['host']}:{config['port']}"
        logger.info(f"已连接 ChromaDB: {location}")
        self._client = client
        return self._client

    def disconnect(self) -> None:
        """断开数据库连接"""
        if self._client:
            self._client = None
        self._collections_cache.clear()

    def get_client(self) -> chromadb.ClientAPI:
        """获取数据库客户端实例，如果未连接则自动连接"""
        return self.connect()

    def _raise(self, error: Exception, message: str, operation: str, name: Optional[str]) -> None:
        """包装并抛出厂商异常；集合不存在时同时清理缓存。"""
        wrapped = classify_database_error(error, f"{message}: {error}", operation, name)
        if isinstance(wrapped, CollectionNotFound) and name:
            self._collections_cache.pop(name, None)
        raise wrapped from error

    def get_collection(self, name: str) -> chromadb.Collection:
        """获取已存在的集合（带缓存）

        Args:
            name: 集合名称

        Returns:
            ChromaDB 集合实例

        Raises:
            CollectionNotFound: 集合不存在
            DatabaseConnectionError: 连接失败
        """
        if name in self._collections_cache:
            return self._collections_cache[name]

        try:
            collection = self.get_client().get_collection(name=name, embedding_function=None)
        except RetrievalError:
            raise
        except Exception as e:
            self._raise(e, f"获取集合 '{name}' 失败", "get_collection", name)

        self._collections_cache[name] = collection
        return collection

    def find_collection(self, name: str) -> Optional[chromadb.Collection]:
        """获取集合，不存在时返回 None"""
        try:
            return self.get_collection(name)
        except CollectionNotFound:
            return None

    def create_collection(self, name: str, metadata: Optional[Dict[str, Any]] = None) -> chromadb.Collection:
        """创建集合；并发创建导致“已存在”时回退为读取现有集合

        Args:
            name: 集合名称
            metadata: 集合元数据（相似度空间、维度、描述等）

        Returns:
            ChromaDB 集合实例
        """
        existing = self.find_collection(name)
        if existing is not None:
            return existing

        try:
            collection = self.get_client().create_collection(
                name=name, metadata=metadata or None, embedding_function=None
            )
        except RetrievalError:
            raise
        except Exception as e:
            if not is_already_exists(e):
                self._raise(e, f"创建集合 '{name}' 失败", "create_collection", name)
            logger.debug(f"集合 '{name}' 已被并发创建，读取现有集合")
            return self.get_collection(name)

        self._collections_cache[name] = collection
        return collection

    def list_collections(self) -> List[str]:
        """列出所有集合名称

        兼容两种返回形态：集合对象列表或名称字符串列表。
        """
        try:
            collections = self.get_client().list_collections()
        except RetrievalError:
            raise
        except Exception as e:
            self._raise(e, "列出集合失败", "list_collections", None)
        return [col if isinstance(col, str) else col.name for col in collections]

    def delete_collection(self, name: str) -> bool:
        """删除集合

        Args:
            name: 集合名称

        Returns:
            实际删除返回 True；集合本就不存在返回 False
        """
        self._collections_cache.pop(name, None)
        try:
            self.get_client().delete_collection(name=name)
        except RetrievalError:
            raise
        except Exception as e:
            try:
                self._raise(e, f"删除集合 '{name}' 失败", "drop_collection", name)
            except CollectionNotFound:
                return False
        return True

    def upsert(
        self,
        collection_name: str,
        ids: List[str],
        embeddings: List[List[float]],
        metadatas: Optional[MetadataList] = None,  # ChromaDB API 使用复数形式
        documents: Optional[List[str]] = None,
    ) -> None:
        """按 ID 写入或覆盖数据"""
        collection = self.get_collection(collection_name)
        try:
            collection.upsert(ids=ids, embeddings=embeddings, metadatas=metadatas, documents=documents)
        except Exception as e:
            self._raise(e, f"向集合 '{collection_name}' 写入数据失败", "insert", collection_name)

    def query(
        self,
        collection_name: str,
        query_embeddings: List[List[float]],
        n_results: int = 10,
        where: Optional[Dict[str, Any]] = None,
        include: Optional[List[IncludeField]] = None,
    ) -> chromadb.QueryResult:
        """向量检索

        Args:
            collection_name: 集合名称
            query_embeddings: 查询向量列表
            n_results: 返回结果数量，默认 10
            where: 元数据过滤条件
            include: 包含的字段列表

        Returns:
            chromadb.QueryResult - 查询结果对象
        """
        collection = self.get_collection(collection_name)
        try:
            return collection.query(
                query_embeddings=query_embeddings,
                n_results=n_results,
                where=where,
                include=include or ["documents", "metadatas", "distances"],
            )
        except Exception as e:
            self._raise(e, f"查询集合 '{collection_name}' 失败", "search", collection_name)

    def get(
        self,
        collection_name: str,
        ids: Optional[List[str]] = None,
        where: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
        include: Optional[List[IncludeField]] = None,
    ) -> chromadb.GetResult:
        """按 ID 或元数据条件获取数据"""
        collection = self.get_collection(collection_name)
        try:
            return collection.get(
                ids=ids,
                where=where,
                limit=limit,
                include=include or ["documents", "metadatas"],
            )
        except Exception as e:
            self._raise(e, f"获取集合 '{collection_name}' 数据失败", "query", collection_name)

    def delete(self, collection_name: str, ids: List[str]) -> None:
        """按 ID 删除集合中的数据"""
        collection = self.get_collection(collection_name)
        try:
            collection.delete(ids=ids)
        except Exception as e:
            self._raise(e, f"删除集合 '{collection_name}' 数据失败", "delete", collection_name)

    def count(self, collection_name: str) -> int:
        """获取集合中的数据数量"""
        collection = self.get_collection(collection_name)
        try:
            return collection.count()
        except Exception as e:
            self._raise(e, f"获取集合 '{collection_name}' 数量失败", "count", collection_name)

    def is_connected(self) -> bool:
        """检查是否已连接到数据库"""
        if self._client is None:
            return False

        try:
            self._client.heartbeat()
            return True
        except (ConnectionError, TimeoutError, OSError):
            return False

    def __enter__(self):
        """上下文管理器入口"""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """上下文管理器出口"""
        self.disconnect()
